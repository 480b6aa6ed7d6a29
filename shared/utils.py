import base64
import hashlib
import logging
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from shared.config import config

__all__ = [
    "config",
    "decode_cursor",
    "encode_cursor",
    "generate_hash",
    "new_id",
    "serialize_value",
    "setup_logging",
    "utcnow",
]


def setup_logging(service_name: str, log_level: str | None = None) -> logging.Logger:
    """Setup logging configuration for a service"""
    logger = logging.getLogger(service_name)
    level = log_level or config.get("log_level", "INFO")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(f"%(asctime)s - {service_name} - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


def generate_hash(text: str) -> str:
    """Stable short hash used for idempotency keys"""
    return hashlib.sha256(text.encode()).hexdigest()


def encode_cursor(position: int) -> str:
    return base64.urlsafe_b64encode(f"pk:{position}".encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> int:
    """Decode a page cursor. Raises ValueError on malformed input."""
    padded = cursor + "=" * (-len(cursor) % 4)
    raw = base64.urlsafe_b64decode(padded.encode()).decode()
    prefix, _, value = raw.partition(":")
    if prefix != "pk" or not value.isdigit():
        raise ValueError(f"Malformed cursor: {cursor}")
    return int(value)


def serialize_value(value: Any) -> Any:
    """Make values JSON compatible for persisted context snapshots."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "model_dump"):
        return serialize_value(value.model_dump())
    if isinstance(value, dict):
        return {str(k): serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialize_value(item) for item in value]
    return value
