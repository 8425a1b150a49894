# file: ./config.py
"""
Central configuration for the chat relay gateway.
Uses utils/env_loader.py for .env loading (auto-trims # comments, safe casts).
Load once in app.py: from utils.env_loader import load_env; load_env(".env")
Then access via get_env(key, default, cast=bool) or the dicts below.
Each manager receives its own dict so tests can pass overrides without touching the environment.
"""

from utils.env_loader import get_env
#=============================================================================
#MAIN_CONFIG: Global settings (used across all managers for logging, etc.)
#=============================================================================
MAIN_CONFIG = {
"LOGGING_LEVEL": get_env("LOGGING_LEVEL", default="INFO"),
"LOG_TO_FILE": get_env("LOG_TO_FILE", default="False", cast=bool),  # rotating files under ./logs
}
#=============================================================================
#FASTAPI_CONFIG: FastAPI app setup (used in FastApiManager for server, CORS, docs)
#=============================================================================
FASTAPI_CONFIG = {
"LOGGING_LEVEL": get_env("FASTAPI_LOGGING_LEVEL", default="INFO"),
"APP_NAME": get_env("APP_NAME", default="Chat Relay Gateway"),  # App title (OpenAPI docs, process title)
"VERSION": get_env("VERSION", default="1.0"),
"ENVIRONMENT": get_env("ENVIRONMENT", default="development"),  # "production" hides internal error details
"RELOAD": get_env("RELOAD", default="False", cast=bool),  # uvicorn --reload (dev only)
"DEFAULT_PORT": get_env("PORT", default="8080", cast=int),
"DEFAULT_HOST": get_env("HOST", default="0.0.0.0"),
"ALLOW_ORIGINS": get_env("ALLOW_ORIGINS", default="*", cast=list),
"ALLOW_CREDENTIALS": get_env("ALLOW_CREDENTIALS", default="False", cast=bool),  # must stay False with "*" origins
"ALLOW_METHODS": get_env("ALLOW_METHODS", default="GET,POST", cast=list),
"ALLOW_HEADERS": get_env("ALLOW_HEADERS", default="Content-Type,Authorization", cast=list),
"EXPOSE_HEADERS": get_env("EXPOSE_HEADERS", default="Retry-After", cast=list),
"ENABLE_DOCS": get_env("ENABLE_DOCS", default="True", cast=bool),
"ENABLE_REDOC": get_env("ENABLE_REDOC", default="False", cast=bool),
}

#=============================================================================
#HTTPX_CONFIG: HTTP client for the protocol bridge (HttpxManager)
#=============================================================================

HTTPX_CONFIG = {
"LOGGING_LEVEL": get_env("HTTPX_LOGGING_LEVEL", default="WARNING"),
"TIMEOUT": get_env("HTTPX_TIMEOUT", default="30.0", cast=float),  # per request (seconds)
"CIRCUIT_FAILURE_THRESHOLD": get_env("HTTPX_CIRCUIT_FAILURE_THRESHOLD", default="5", cast=int),  # open after N errors
"CIRCUIT_RECOVERY_TIMEOUT": get_env("HTTPX_CIRCUIT_RECOVERY_TIMEOUT", default="30", cast=int),  # seconds before half-open
"RETRY_ATTEMPTS": get_env("HTTPX_RETRY_ATTEMPTS", default="3", cast=int),  # timeouts, network errors, 5xx
"RETRY_MULTIPLIER": get_env("HTTPX_RETRY_MULTIPLIER", default="1", cast=float),
"RETRY_MIN_WAIT": get_env("HTTPX_RETRY_MIN_WAIT", default="1", cast=float),
"RETRY_MAX_WAIT": get_env("HTTPX_RETRY_MAX_WAIT", default="10", cast=float),
}

#=============================================================================
#RELAY_CONFIG: session lifecycle (LifecycleController, CredentialStore, RelayManager)
#=============================================================================

RELAY_CONFIG = {
"LOGGING_LEVEL": get_env("RELAY_LOGGING_LEVEL", default="INFO"),
# one sub directory per user id holding the protocol credential files
"SESSIONS_DIR": get_env("SESSIONS_DIR", default="sessions"),
# unscanned QR sessions are dropped after this window
"QR_TIMEOUT_SECONDS": get_env("QR_TIMEOUT_SECONDS", default="30", cast=float),
# how long /login waits for the first QR before answering "pending" without one
"QR_WAIT_SECONDS": get_env("QR_WAIT_SECONDS", default="10", cast=float),
"RECONNECT_DELAY_SECONDS": get_env("RECONNECT_DELAY_SECONDS", default="5", cast=float),
"MAX_RETRIES": get_env("MAX_RETRIES", default="5", cast=int),
# from this attempt on the reconnect starts from empty credentials
"CREDENTIAL_WIPE_RETRY_THRESHOLD": get_env("CREDENTIAL_WIPE_RETRY_THRESHOLD", default="3", cast=int),
"WIPE_ON_RETRY_EXHAUSTION": get_env("WIPE_ON_RETRY_EXHAUSTION", default="True", cast=bool),
# second /login while a QR is pending: True returns the same QR, False forces a new session
"REUSE_PENDING_QR": get_env("REUSE_PENDING_QR", default="True", cast=bool),
"RESTORE_ON_STARTUP": get_env("RESTORE_ON_STARTUP", default="True", cast=bool),
"WIPE_ON_STARTUP": get_env("WIPE_ON_STARTUP", default="False", cast=bool),
"JID_SUFFIX": get_env("JID_SUFFIX", default="@s.whatsapp.net"),
"RATE_LIMIT_ENABLED": get_env("RATE_LIMIT_ENABLED", default="True", cast=bool),
"SEND_RATE_LIMIT": get_env("SEND_RATE_LIMIT", default="60/minute"),
}

#=============================================================================
#BRIDGE_CONFIG: external protocol bridge (BridgeConnector)
#=============================================================================
BRIDGE_CONFIG = {
"LOGGING_LEVEL": get_env("BRIDGE_LOGGING_LEVEL", default="INFO"),
"HTTP_URL": get_env("BRIDGE_HTTP_URL", default="http://localhost:3000"),
"WS_URL": get_env("BRIDGE_WS_URL", default="ws://localhost:3000"),
"OPEN_TIMEOUT": get_env("BRIDGE_OPEN_TIMEOUT", default="10", cast=float),  # websocket handshake (seconds)
"PING_INTERVAL": get_env("BRIDGE_PING_INTERVAL", default="20", cast=float),
}
