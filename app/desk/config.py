import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    site_url: str

    storage_backend: str
    local_storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    notification_email_from: str
    resend_api_key: str

    ai_gateway_url: str
    ai_gateway_api_key: str
    ai_model: str

    sla_at_risk_fraction: float
    widget_allowed_origins: tuple[str, ...]
    csrf_enabled: bool
    max_attachment_bytes: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    env = _getenv("ENV", "development")
    csrf_raw = _getenv("CSRF_ENABLED")
    if csrf_raw:
        csrf_enabled = csrf_raw.lower() in ("1", "true", "yes", "on")
    else:
        csrf_enabled = env.lower() != "test"
    origins = tuple(o.strip() for o in _getenv("WIDGET_ALLOWED_ORIGINS", "*").split(",") if o.strip())
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=env,
        database_url=_getenv("DATABASE_URL", "sqlite:///desk.db"),
        site_url=_getenv("SITE_URL", "http://localhost:8080").rstrip("/"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        local_storage_root=_getenv("LOCAL_STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        notification_email_from=_getenv("NOTIFICATION_EMAIL_FROM", "Complaint Desk <noreply@example.edu>"),
        resend_api_key=_getenv("RESEND_API_KEY", ""),
        ai_gateway_url=_getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1"),
        ai_gateway_api_key=_getenv("AI_GATEWAY_API_KEY", ""),
        ai_model=_getenv("AI_MODEL", "google/gemini-2.5-flash"),
        sla_at_risk_fraction=_getenv_float("SLA_AT_RISK_FRACTION", 0.25),
        widget_allowed_origins=origins or ("*",),
        csrf_enabled=csrf_enabled,
        max_attachment_bytes=_getenv_int("MAX_ATTACHMENT_BYTES", 10 * 1024 * 1024),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "SITE_URL": s.site_url,
        "STORAGE_BACKEND": s.storage_backend,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "NOTIFICATION_EMAIL_FROM": s.notification_email_from,
        "RESEND_API_KEY": s.resend_api_key,
        "AI_GATEWAY_URL": s.ai_gateway_url,
        "AI_GATEWAY_API_KEY": s.ai_gateway_api_key,
        "AI_MODEL": s.ai_model,
        "SLA_AT_RISK_FRACTION": s.sla_at_risk_fraction,
        "WIDGET_ALLOWED_ORIGINS": s.widget_allowed_origins,
        "CSRF_ENABLED": s.csrf_enabled,
        "MAX_ATTACHMENT_BYTES": s.max_attachment_bytes,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # request body limit; per-attachment limit enforced in the upload service
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
