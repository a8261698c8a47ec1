from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any


class AIGatewayError(RuntimeError):
    pass


class AIGatewayRateLimited(AIGatewayError):
    pass


class AIGatewayPaymentRequired(AIGatewayError):
    pass


@dataclass(frozen=True)
class AIGatewayClient:
    """OpenAI-compatible chat completions client."""

    api_key: str
    model: str
    base_url: str = "https://ai.gateway.lovable.dev/v1"
    timeout_seconds: int = 60

    def _request(self, payload: dict[str, Any]) -> urllib.request.Request:
        url = self.base_url.rstrip("/") + "/chat/completions"
        req = urllib.request.Request(url, data=json.dumps(payload).encode("utf-8"), method="POST")
        req.add_header("Authorization", f"Bearer {self.api_key}")
        req.add_header("Content-Type", "application/json")
        return req

    def _open(self, payload: dict[str, Any], retries: int):
        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                return urllib.request.urlopen(self._request(payload), timeout=self.timeout_seconds)
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    # rate limit; brief backoff, then surface to the caller
                    last_err = AIGatewayRateLimited("Rate limit exceeded, please try again later.")
                    if attempt < retries:
                        time.sleep(min(2 * (attempt + 1), 10))
                        continue
                    raise last_err from e
                if e.code == 402:
                    raise AIGatewayPaymentRequired("AI service temporarily unavailable.") from e
                try:
                    body = e.read().decode("utf-8", errors="ignore")
                except Exception:
                    body = ""
                raise AIGatewayError(f"HTTP {e.code} from AI gateway: {body[:300]}") from e
            except Exception as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise AIGatewayError(f"AI gateway request failed after retries: {last_err}")

    def chat(self, messages: list[dict[str, str]], *, retries: int = 2) -> str:
        payload = {"model": self.model, "messages": messages}
        with self._open(payload, retries) as resp:
            raw = resp.read()
        try:
            data = json.loads(raw.decode("utf-8"))
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIGatewayError("Invalid response from AI gateway") from e

    def stream_chat(self, messages: list[dict[str, str]], *, retries: int = 1) -> Iterator[bytes]:
        """
        Open a streaming completion and yield the raw server-sent-event lines.
        Errors before the first byte raise; the caller relays lines unchanged.
        """
        payload = {"model": self.model, "messages": messages, "stream": True}
        resp = self._open(payload, retries)

        def _lines() -> Iterator[bytes]:
            with resp:
                for line in resp:
                    yield line

        return _lines()


def client_from_config(config: dict) -> AIGatewayClient:
    api_key = (config.get("AI_GATEWAY_API_KEY") or "").strip()
    if not api_key:
        raise AIGatewayError("AI gateway is not configured (AI_GATEWAY_API_KEY).")
    return AIGatewayClient(
        api_key=api_key,
        model=(config.get("AI_MODEL") or "google/gemini-2.5-flash").strip(),
        base_url=(config.get("AI_GATEWAY_URL") or "https://ai.gateway.lovable.dev/v1").strip(),
    )
