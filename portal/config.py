import logging
import os
from typing import List

from dotenv import load_dotenv


load_dotenv()


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


# -----------------------------
# Service
# -----------------------------

DB_PATH = os.getenv("PORTAL_DB_PATH", "./data/portal.sqlite3")
LISTEN_HOST = os.getenv("LISTEN_HOST", "127.0.0.1")
LISTEN_PORT = int(os.getenv("LISTEN_PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
MOCK_MODE = _env_flag("MOCK_MODE")
ADMIN_KEY = os.getenv("ADMIN_KEY")  # optional

# -----------------------------
# Auth
# -----------------------------

JWT_SECRET = os.getenv("JWT_SECRET", "dev-only-change-me")
JWT_ALGORITHM = "HS256"
JWT_TTL_SECONDS = int(os.getenv("JWT_TTL_SECONDS", str(24 * 60 * 60)))

OTP_TTL_SECONDS = 5 * 60
OTP_RESEND_SECONDS = 60
OTP_MAX_ATTEMPTS = 5

# -----------------------------
# Upstreams
# -----------------------------

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
CHAT_DEFAULT_MODEL = os.getenv("CHAT_DEFAULT_MODEL", "gpt-4o")
CHAT_MODELS = _env_list("CHAT_MODELS", "gpt-4o,gpt-4o-mini")
CHAT_MAX_CONTEXT_TOKENS = int(os.getenv("CHAT_MAX_CONTEXT_TOKENS", "16000"))
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "dall-e-3")

REPLICATE_API_KEY = os.getenv("REPLICATE_API_KEY", "")
REPLICATE_BASE_URL = os.getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1").rstrip("/")
REPLICATE_MODEL_VERSION = os.getenv(
    "REPLICATE_MODEL_VERSION",
    "c846a69991daf4c0e5d016514849d14ee5b2e6846ce6b9d6f21369e564cfe51e",
)
REPLICATE_MAX_RETRIES = 3

KAVENEGAR_API_KEY = os.getenv("KAVENEGAR_API_KEY", "")
KAVENEGAR_BASE_URL = os.getenv("KAVENEGAR_BASE_URL", "https://api.kavenegar.com/v1").rstrip("/")
KAVENEGAR_SENDER = os.getenv("KAVENEGAR_SENDER", "2000660110")

# -----------------------------
# Generation jobs / usage
# -----------------------------

GENERATION_POLL_INTERVAL_SECONDS = float(os.getenv("GENERATION_POLL_INTERVAL_SECONDS", "10"))
GENERATION_POLL_MAX_ATTEMPTS = int(os.getenv("GENERATION_POLL_MAX_ATTEMPTS", "60"))
GENERATION_BACKGROUND_POLL = _env_flag("GENERATION_BACKGROUND_POLL", "1")

USAGE_RESET_DAYS = int(os.getenv("USAGE_RESET_DAYS", "30"))

MAX_IMAGE_SIZE = 10 * 1024 * 1024
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp"}


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
