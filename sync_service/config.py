"""
config.py — Environment Configuration for the Bot Order Sync Service

All service addresses, credentials and CRM constants are read from environment
variables once at import time. Components receive these values as constructor
defaults, so tests and scripts can pass explicit values instead.

Groups:
    • CRM (SendPulse) API and OAuth credentials
    • CRM pipeline / step / currency constants
    • Ecommerce (shop) API
    • Bot platform variable API
    • Database and message queue
    • Timeouts and worker pools
"""

import os


def _int_env(name: str, default: int) -> int:
    """Reads an integer environment variable, falling back to the default on bad input."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- CRM (SendPulse) ---
CRM_API_URL = os.environ.get("CRM_API_URL", "https://api.sendpulse.com")
CRM_CLIENT_ID = os.environ.get("SENDPULSE_CLIENT_ID", "")
CRM_CLIENT_SECRET = os.environ.get("SENDPULSE_CLIENT_SECRET", "")

# Pipeline "Bot orders", step "New order"
CRM_PIPELINE_ID = _int_env("SENDPULSE_PIPELINE_ID", 153270)
CRM_STEP_ID = _int_env("SENDPULSE_STEP_ID", 529997)
CRM_CURRENCY = os.environ.get("CRM_CURRENCY", "CHF")

# Ecommerce order status -> CRM pipeline step
CRM_STATUS_STEPS = {
    "PENDING": _int_env("SENDPULSE_STEP_PENDING", 529997),
    "CONFIRMED": _int_env("SENDPULSE_STEP_CONFIRMED", 529998),
    "SHIPPED": _int_env("SENDPULSE_STEP_SHIPPED", 529999),
    "DELIVERED": _int_env("SENDPULSE_STEP_DELIVERED", 530000),
    "CANCELLED": _int_env("SENDPULSE_STEP_CANCELLED", 530001),
}

DEAL_TITLE_MAX_LENGTH = _int_env("DEAL_TITLE_MAX_LENGTH", 255)
DEAL_ATTRIBUTE_TEXT_LIMIT = _int_env("DEAL_ATTRIBUTE_TEXT_LIMIT", 250)

# Token expiry buffer in seconds
CRM_TOKEN_EXPIRY_BUFFER = _int_env("CRM_TOKEN_EXPIRY_BUFFER", 60)

# --- Ecommerce ---
ECOMMERCE_API_URL = os.environ.get("ECOMMERCE_API_URL", "http://ecommerce_api:5000")
ECOMMERCE_API_TOKEN = os.environ.get("ECOMMERCE_API_TOKEN", "")
CATALOG_LANGUAGE = os.environ.get("CATALOG_LANGUAGE", "uk")

# --- Bot platform ---
BOT_API_URL = os.environ.get("BOT_API_URL", "https://api.sendpulse.com")

# --- Inbound API ---
BOT_API_KEY = os.environ.get("BOT_API_KEY", "")

# --- Database ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./order_sync.db")

# --- RabbitMQ (order status events from the shop) ---
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")
STATUS_QUEUE = os.environ.get("STATUS_QUEUE", "ecommerce.order.status")
STATUS_LISTENER_ENABLED = _bool_env("STATUS_LISTENER_ENABLED", False)

# --- Timeouts / pools ---
HTTP_CONNECT_TIMEOUT = float(os.environ.get("HTTP_CONNECT_TIMEOUT", "5.0"))
HTTP_READ_TIMEOUT = float(os.environ.get("HTTP_READ_TIMEOUT", "15.0"))
ATTACH_WORKERS = _int_env("ATTACH_WORKERS", 4)
SIDE_EFFECT_WORKERS = _int_env("SIDE_EFFECT_WORKERS", 2)
