import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str

    woo_store_url: str
    woo_consumer_key: str
    woo_consumer_secret: str
    woo_webhook_secret: str
    woo_product_plan_map: str

    brevo_api_key: str
    brevo_sender_email: str
    brevo_sender_name: str

    leads_ingest_api_key: str
    rate_limit_enabled: bool

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///portal.db"),
        app_url=_getenv("APP_URL", "http://localhost:3000").rstrip("/"),
        woo_store_url=_getenv("WOO_STORE_URL", "").rstrip("/"),
        woo_consumer_key=_getenv("WOO_CONSUMER_KEY", ""),
        woo_consumer_secret=_getenv("WOO_CONSUMER_SECRET", ""),
        woo_webhook_secret=_getenv("WOO_WEBHOOK_SECRET", ""),
        woo_product_plan_map=_getenv("WOO_PRODUCT_PLAN_MAP", ""),
        brevo_api_key=_getenv("BREVO_API_KEY", ""),
        brevo_sender_email=_getenv("BREVO_SENDER_EMAIL", ""),
        brevo_sender_name=_getenv("BREVO_SENDER_NAME", "AgencyOS"),
        leads_ingest_api_key=_getenv("LEADS_INGEST_API_KEY", ""),
        rate_limit_enabled=_getbool("RATE_LIMIT_ENABLED", True),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url,
        "WOO_STORE_URL": s.woo_store_url,
        "WOO_CONSUMER_KEY": s.woo_consumer_key,
        "WOO_CONSUMER_SECRET": s.woo_consumer_secret,
        "WOO_WEBHOOK_SECRET": s.woo_webhook_secret,
        "WOO_PRODUCT_PLAN_MAP": s.woo_product_plan_map,
        "BREVO_API_KEY": s.brevo_api_key,
        "BREVO_SENDER_EMAIL": s.brevo_sender_email,
        "BREVO_SENDER_NAME": s.brevo_sender_name,
        "LEADS_INGEST_API_KEY": s.leads_ingest_api_key,
        "RATE_LIMIT_ENABLED": s.rate_limit_enabled,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # request file uploads (largest allowed type is video at 100MB)
        "MAX_CONTENT_LENGTH": 100 * 1024 * 1024,
        "JSON_SORT_KEYS": False,
    }
