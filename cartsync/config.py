"""
Runtime configuration read from the environment.

Values are read once at import; tests override them by passing explicit
arguments to the constructors instead of mutating these globals.
"""

import os
from pathlib import Path

CARTSYNC_ENV = os.environ.get("CARTSYNC_ENV", "development").lower()

PRODUCTION_BASE_URL = "https://olcademybackend.vercel.app"
DEVELOPMENT_BASE_URL = "http://localhost:8000"
API_BASE_URL = os.environ.get("CARTSYNC_API_BASE_URL", "")

# Local persistence
LOCAL_STORE_PATH = os.environ.get(
    "CARTSYNC_LOCAL_STORE_PATH",
    str(Path.home() / ".cartsync" / "local_state.json"),
)
LOCAL_STORE_KEY = os.environ.get("CARTSYNC_LOCAL_STORE_KEY", "cartsync:local")
LOCAL_TTL = int(os.environ.get("CARTSYNC_LOCAL_TTL", "2592000"))  # 30 days

# Upstash Redis (optional LocalStore backend)
UPSTASH_REDIS_REST_URL = os.environ.get("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")

# Timeouts
REQUEST_TIMEOUT = float(os.environ.get("CARTSYNC_REQUEST_TIMEOUT", "15"))
NOTIFICATION_TIMEOUT_MS = int(os.environ.get("CARTSYNC_NOTIFICATION_TIMEOUT_MS", "3000"))


def get_api_base_url() -> str:
    """Get the backend base URL.

    An explicit CARTSYNC_API_BASE_URL always wins; otherwise the URL is
    picked from CARTSYNC_ENV.
    """
    if API_BASE_URL:
        if API_BASE_URL.startswith("http"):
            return API_BASE_URL.rstrip("/")
        return f"https://{API_BASE_URL.rstrip('/')}"

    if CARTSYNC_ENV == "production":
        return PRODUCTION_BASE_URL
    return DEVELOPMENT_BASE_URL
