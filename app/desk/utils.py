from __future__ import annotations

import hashlib
import json
from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def clean_text(s: Any) -> str:
    if s is None:
        return ""
    return str(s).strip()


def optional_text(s: Any) -> str | None:
    return clean_text(s) or None


def parse_date(s: str | None) -> date | None:
    s = clean_text(s)
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def parse_datetime(s: str | None) -> datetime | None:
    """Accepts YYYY-MM-DD or YYYY-MM-DDTHH:MM (HTML datetime-local)."""
    s = clean_text(s)
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_int(s: Any) -> int | None:
    if s is None or s == "":
        return None
    try:
        return int(str(s).strip())
    except ValueError:
        return None


def parse_bool(s: Any) -> bool:
    if isinstance(s, bool):
        return s
    return clean_text(s).lower() in ("1", "true", "yes", "on")


def parse_id_list(values: list[str] | None) -> list[int]:
    out: list[int] = []
    for v in values or []:
        n = parse_int(v)
        if n is not None and n not in out:
            out.append(n)
    return out


def parse_keywords(raw: str | None) -> list[str]:
    return [k.strip() for k in (raw or "").split(",") if k.strip()]


def json_dumps_sorted(d: dict[str, Any]) -> str:
    return json.dumps(d, sort_keys=True, separators=(",", ":"), default=str)


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
