import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    smtp_server: str
    smtp_port: int
    smtp_use_tls: bool
    smtp_username: str
    smtp_password: str
    email_from: str
    email_deferred: bool

    app_base_url: str
    default_currency: str

    ratelimit_enabled: bool
    ratelimit_login: str
    ratelimit_api: str
    ratelimit_sensitive: str

    rfq_invite_ttl_days: int
    delivery_token_ttl_days: int
    contract_expiry_window_days: int
    contract_reminder_days: tuple[int, ...]
    password_reset_ttl_hours: int
    tenant_invite_ttl_days: int
    supplier_portal_ttl_days: int
    evaluation_reminder_after_days: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getflag(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _parse_days(raw: str) -> tuple[int, ...]:
    days = []
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            days.append(int(part))
    return tuple(sorted(set(days), reverse=True))


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///procurement.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getint("SMTP_PORT", 587),
        smtp_use_tls=_getflag("SMTP_USE_TLS", True),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        email_from=_getenv("EMAIL_FROM", "noreply@procurement.local"),
        email_deferred=_getflag("EMAIL_DEFERRED", False),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:8080").rstrip("/"),
        default_currency=_getenv("DEFAULT_CURRENCY", "TRY"),
        ratelimit_enabled=_getflag("RATELIMIT_ENABLED", True),
        ratelimit_login=_getenv("RATELIMIT_LOGIN", "5/300"),
        ratelimit_api=_getenv("RATELIMIT_API", "100/60"),
        ratelimit_sensitive=_getenv("RATELIMIT_SENSITIVE", "10/60"),
        rfq_invite_ttl_days=_getint("RFQ_INVITE_TTL_DAYS", 7),
        delivery_token_ttl_days=_getint("DELIVERY_TOKEN_TTL_DAYS", 7),
        contract_expiry_window_days=_getint("CONTRACT_EXPIRY_WINDOW_DAYS", 30),
        contract_reminder_days=_parse_days(_getenv("CONTRACT_REMINDER_DAYS", "30,15,7,1")),
        password_reset_ttl_hours=_getint("PASSWORD_RESET_TTL_HOURS", 2),
        tenant_invite_ttl_days=_getint("TENANT_INVITE_TTL_DAYS", 7),
        supplier_portal_ttl_days=_getint("SUPPLIER_PORTAL_TTL_DAYS", 30),
        evaluation_reminder_after_days=_getint("EVALUATION_REMINDER_AFTER_DAYS", 7),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # outbound mail
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "EMAIL_FROM": s.email_from,
        "EMAIL_DEFERRED": s.email_deferred,
        "APP_BASE_URL": s.app_base_url,
        "DEFAULT_CURRENCY": s.default_currency,
        # rate limits, "<max>/<window seconds>"
        "RATELIMIT_ENABLED": s.ratelimit_enabled,
        "RATELIMIT_LOGIN": s.ratelimit_login,
        "RATELIMIT_API": s.ratelimit_api,
        "RATELIMIT_SENSITIVE": s.ratelimit_sensitive,
        "RFQ_INVITE_TTL_DAYS": s.rfq_invite_ttl_days,
        "DELIVERY_TOKEN_TTL_DAYS": s.delivery_token_ttl_days,
        "CONTRACT_EXPIRY_WINDOW_DAYS": s.contract_expiry_window_days,
        "CONTRACT_REMINDER_DAYS": s.contract_reminder_days,
        "PASSWORD_RESET_TTL_HOURS": s.password_reset_ttl_hours,
        "TENANT_INVITE_TTL_DAYS": s.tenant_invite_ttl_days,
        "SUPPLIER_PORTAL_TTL_DAYS": s.supplier_portal_ttl_days,
        "EVALUATION_REMINDER_AFTER_DAYS": s.evaluation_reminder_after_days,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
