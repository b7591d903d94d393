import os
import logging
from typing import Dict, Mapping
from urllib.parse import urlencode

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    """Reads a float setting, falling back to the default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r} in environment. Defaulting to {default}.")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r} in environment. Defaulting to {default}.")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


# --- Backend API ---
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
API_TIMEOUT_SECONDS = _env_float("API_TIMEOUT_SECONDS", 60.0)
API_RETRIES = _env_int("API_RETRIES", 3) # Retries for the safe read verb only
API_RETRY_DELAY_SECONDS = _env_float("API_RETRY_DELAY_SECONDS", 1.0)
API_ENABLE_CACHE = _env_bool("API_ENABLE_CACHE", True)

CLIENT_NAME = os.getenv("CLIENT_NAME", "wallet-client")
CLIENT_VERSION = os.getenv("CLIENT_VERSION", "1.0.0")

# --- Wallet Authentication ---
AUTH_REQUEST_RETRIES = _env_int("AUTH_REQUEST_RETRIES", 2) # create-nonce / connect-wallet
SESSION_VERIFY_TIMEOUT_SECONDS = _env_float("SESSION_VERIFY_TIMEOUT_SECONDS", 5.0)
DISCONNECT_DEBOUNCE_SECONDS = _env_float("DISCONNECT_DEBOUNCE_SECONDS", 3.0)
AUTH_ERROR_COOLDOWN_SECONDS = _env_float("AUTH_ERROR_COOLDOWN_SECONDS", 3.0)

# Basic validation
if API_TIMEOUT_SECONDS < 1:
    logger.warning("API timeout is very low, consider increasing it.")
if API_RETRIES < 0:
    logger.warning("API_RETRIES cannot be negative. Defaulting to 0.")
    API_RETRIES = 0
if AUTH_REQUEST_RETRIES < 0:
    logger.warning("AUTH_REQUEST_RETRIES cannot be negative. Defaulting to 0.")
    AUTH_REQUEST_RETRIES = 0

# --- Endpoints (external contract) ---
API_ENDPOINTS: Dict[str, str] = {
    "CREATE_NONCE": "/create-nonce",
    "CONNECT_WALLET": "/connect-wallet",
    "DISCONNECT_WALLET": "/disconnect-wallet",
    "GET_USER": "/user",
    "USER_PROFILE": "/users/:address",
    "DELETE_ACCOUNT": "/delete-account",
}

HTTP_STATUS = {
    "OK": 200,
    "CREATED": 201,
    "NO_CONTENT": 204,
    "BAD_REQUEST": 400,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "UNPROCESSABLE_ENTITY": 422,
    "TOO_MANY_REQUESTS": 429,
    "INTERNAL_SERVER_ERROR": 500,
    "BAD_GATEWAY": 502,
    "SERVICE_UNAVAILABLE": 503,
}

# Cache lifetimes in seconds
CACHE_TTL = {
    "SHORT": 30.0,
    "MEDIUM": 2 * 60.0,
    "LONG": 5 * 60.0,
    "VERY_LONG": 15 * 60.0,
}
DEFAULT_CACHE_TTL_SECONDS = CACHE_TTL["LONG"]

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "X-Client": CLIENT_NAME,
    "X-Version": CLIENT_VERSION,
}

# Paths a presentation layer must leave once the wallet goes away
PROTECTED_ROUTE_PREFIXES = (
    "/app/settings",
    "/app/launch",
    "/app/creator",
    "/app/rewards",
)


def build_endpoint(
    endpoint: str,
    params: Mapping[str, object] | None = None,
    query: Mapping[str, object] | None = None,
) -> str:
    """
    Fills `:name` path parameters and appends a query string.

    build_endpoint("/users/:address", {"address": "0xabc"}, {"page": 2})
    -> "/users/0xabc?page=2"
    """
    url = endpoint
    for key, value in (params or {}).items():
        url = url.replace(f":{key}", str(value))
    if query:
        pairs = []
        for key, value in query.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            pairs.append((key, str(value)))
        url += f"?{urlencode(pairs)}"
    return url
