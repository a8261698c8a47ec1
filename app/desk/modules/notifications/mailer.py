from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


class MailerError(RuntimeError):
    pass


class Mailer:
    def send(self, *, to: str, subject: str, html: str) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class LogMailer(Mailer):
    """Used when no email provider is configured (dev/test)."""

    sender: str

    def send(self, *, to: str, subject: str, html: str) -> dict[str, Any]:
        logger.info("Email (not sent, no provider configured) from=%s to=%s subject=%s", self.sender, to, subject)
        return {"logged": True}


@dataclass(frozen=True)
class ResendMailer(Mailer):
    api_key: str
    sender: str
    base_url: str = "https://api.resend.com"
    timeout_seconds: int = 20

    def send(self, *, to: str, subject: str, html: str, retries: int = 2) -> dict[str, Any]:
        body = json.dumps({"from": self.sender, "to": [to], "subject": subject, "html": html}).encode("utf-8")
        url = self.base_url.rstrip("/") + "/emails"

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=body, method="POST")
                req.add_header("Authorization", f"Bearer {self.api_key}")
                req.add_header("Content-Type", "application/json")
                req.add_header("Accept", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        return json.loads(raw.decode("utf-8")) if raw else {}
                    except ValueError as e:
                        raise MailerError("Invalid JSON from Resend") from e
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = MailerError("Rate limited (429)")
                    continue
                try:
                    detail = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    detail = ""
                raise MailerError(f"HTTP {e.code} from Resend: {detail[:300]}") from e
            except MailerError:
                raise
            except Exception as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise MailerError(f"Email send failed after retries: {last_err}")


def mailer_from_config(config: dict) -> Mailer:
    sender = (config.get("NOTIFICATION_EMAIL_FROM") or "").strip() or "Complaint Desk <noreply@example.edu>"
    api_key = (config.get("RESEND_API_KEY") or "").strip()
    if api_key:
        return ResendMailer(api_key=api_key, sender=sender)
    return LogMailer(sender=sender)
