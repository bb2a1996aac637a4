from __future__ import annotations

import logging
import os
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .constants import LOGGER


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> set[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a numeric value.")


def load_env(env_path: Path | None = None) -> None:
    env_path = env_path or Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_env() -> None:
    base_url = os.getenv("API_BASE_URL", "").strip()
    if not base_url:
        raise RuntimeError("Missing required environment variable: API_BASE_URL")

    parsed = urlparse(base_url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise RuntimeError(
            "API_BASE_URL must be a valid http(s) URL (for example: "
            "https://api.example.com/api/v1)."
        )

    if get_env_int("API_MAX_RETRIES", 3) < 0:
        raise RuntimeError("API_MAX_RETRIES must not be negative.")
    if get_env_float("API_RETRY_BASE_DELAY", 1.0) < 0:
        raise RuntimeError("API_RETRY_BASE_DELAY must not be negative.")

    refresh_path = os.getenv("API_REFRESH_PATH", "").strip()
    if refresh_path and not refresh_path.startswith("/"):
        LOGGER.warning("API_REFRESH_PATH=%s is not an absolute path.", refresh_path)
        raise RuntimeError("API_REFRESH_PATH must start with '/'.")


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("API_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
