import os
import secrets


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str):
    return [item.strip() for item in os.environ.get(name, "").split(",") if item.strip()]


def _canary_percent() -> int:
    try:
        value = int(os.environ.get("CANARY_PERCENT", "0"))
    except ValueError:
        value = 0
    return max(0, min(100, value))


class Config:
    """
    Unified configuration class for development and production environments.
    Reads settings primarily from environment variables, with sensible defaults.
    """

    # --- General & Security ---
    SECRET_KEY = os.environ.get("SECRET_KEY", secrets.token_hex(16))
    API_KEY_SECRET = os.environ.get("API_KEY_SECRET")
    ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()
    DEBUG = ENVIRONMENT != "production"

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_FILE = os.environ.get("LOG_FILE")

    # --- Keyed state store ---
    REDIS_URL = os.environ.get("REDIS_URL")

    # --- CORS Origins ---
    CORS_ORIGINS = _env_list("CORS_ORIGINS") or ["*"]

    # --- Reverse proxies ---
    # Number of trusted proxies in front of the app; 0 keys clients on the socket peer.
    PROXY_TRUSTED_HOPS = int(os.environ.get("PROXY_TRUSTED_HOPS", 0))

    # --- Deployment identity ---
    SERVICE_NAME = os.environ.get("SERVICE_NAME", "mission-control-hq")
    REGION_ID = os.environ.get("REGION_ID", "us-east-1")
    DEPLOYMENT_ID = os.environ.get("DEPLOYMENT_ID")
    GHOST_SIGNATURE = os.environ.get("GHOST_SIGNATURE")
    GHOST_KEY_ID = os.environ.get("GHOST_KEY_ID", "default")
    CANARY_PERCENT = _canary_percent()

    # --- Admission control ---
    RATE_LIMIT_WINDOW_MS = int(os.environ.get("RATE_LIMIT_WINDOW_MS", 60000))
    RATE_LIMIT_AUTH_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_AUTH_MAX_REQUESTS", 100))
    RATE_LIMIT_AUTH_MAX_BURST = int(os.environ.get("RATE_LIMIT_AUTH_MAX_BURST", 10))
    RATE_LIMIT_PUBLIC_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_PUBLIC_MAX_REQUESTS", 20))
    RATE_LIMIT_PUBLIC_MAX_BURST = int(os.environ.get("RATE_LIMIT_PUBLIC_MAX_BURST", 5))
    RATE_LIMIT_FAIL_OPEN = _env_bool("RATE_LIMIT_FAIL_OPEN", True)

    # --- Health monitor ---
    MONITOR_ENABLED = _env_bool("MONITOR_ENABLED", False)
    MONITOR_TARGETS = _env_list("MONITOR_TARGETS")
    MONITOR_INTERVAL_SEC = float(os.environ.get("MONITOR_INTERVAL_SEC", 30))
    MONITOR_ALERT_THRESHOLD = int(os.environ.get("MONITOR_ALERT_THRESHOLD", 4))
    MONITOR_REQUEST_TIMEOUT_SEC = float(os.environ.get("MONITOR_REQUEST_TIMEOUT_SEC", 10))
    MONITOR_VERIFY_SIGNATURES = _env_bool("MONITOR_VERIFY_SIGNATURES", False)

    # --- Paging ---
    PAGERDUTY_INTEGRATION_KEY = os.environ.get("PAGERDUTY_INTEGRATION_KEY")
    PAGERDUTY_EVENTS_URL = os.environ.get("PAGERDUTY_EVENTS_URL", "https://events.pagerduty.com/v2/enqueue")
