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

    notify_channel: str
    notify_async: bool
    notify_workers: int
    notify_max_attempts: int
    notify_backoff_seconds: float
    notify_backoff_max_seconds: float

    smtp_server: str
    smtp_port: int | None
    smtp_use_tls: bool
    smtp_username: str
    smtp_password: str
    email_from: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _getenv_int(name: str, default: int | None) -> int | None:
    raw = _getenv(name)
    if not raw:
        return default
    return int(raw)


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    return float(raw)


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///examflow.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        notify_channel=_getenv("NOTIFY_CHANNEL", "log"),
        notify_async=_getenv_bool("NOTIFY_ASYNC", True),
        notify_workers=_getenv_int("NOTIFY_WORKERS", 2) or 1,
        notify_max_attempts=_getenv_int("NOTIFY_MAX_ATTEMPTS", 5) or 1,
        notify_backoff_seconds=_getenv_float("NOTIFY_BACKOFF_SECONDS", 1.0),
        notify_backoff_max_seconds=_getenv_float("NOTIFY_BACKOFF_MAX_SECONDS", 60.0),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getenv_int("SMTP_PORT", None),
        smtp_use_tls=_getenv_bool("SMTP_USE_TLS", True),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        email_from=_getenv("EMAIL_FROM", ""),
    )


def load_config() -> dict:
    s = load_settings()
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
        # notification delivery
        "NOTIFY_CHANNEL": s.notify_channel,
        "NOTIFY_ASYNC": s.notify_async,
        "NOTIFY_WORKERS": s.notify_workers,
        "NOTIFY_MAX_ATTEMPTS": s.notify_max_attempts,
        "NOTIFY_BACKOFF_SECONDS": s.notify_backoff_seconds,
        "NOTIFY_BACKOFF_MAX_SECONDS": s.notify_backoff_max_seconds,
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "EMAIL_FROM": s.email_from,
        # encrypted uploads (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
