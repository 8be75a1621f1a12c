"""Runtime configuration read from the environment."""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"

DEFAULT_CACHE_KEY = "coding-platform-data-v1"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    remote_url: Optional[str] = None
    store_path: Path = DATA_DIR / "store.json"
    cache_path: Path = DATA_DIR / "local_cache.json"
    cache_key: str = DEFAULT_CACHE_KEY
    secret_key: str = ""
    log_level: str = "INFO"
    save_debounce: float = 0.1
    min_save_interval: float = 0.5
    retry_base_delay: float = 1.0
    max_retries: int = 3
    max_retry_duration: float = 30.0
    poll_interval: float = 5.0
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            remote_url=env.get("TRACKER_REMOTE_URL") or None,
            store_path=Path(env.get("TRACKER_STORE_PATH") or DATA_DIR / "store.json"),
            cache_path=Path(env.get("TRACKER_CACHE_PATH") or DATA_DIR / "local_cache.json"),
            cache_key=env.get("TRACKER_CACHE_KEY") or DEFAULT_CACHE_KEY,
            secret_key=env.get("TRACKER_SECRET", secrets.token_hex(16)),
            log_level=(env.get("TRACKER_LOG_LEVEL") or "INFO").upper(),
            save_debounce=_env_float(env, "TRACKER_SAVE_DEBOUNCE", 0.1),
            min_save_interval=_env_float(env, "TRACKER_MIN_SAVE_INTERVAL", 0.5),
            retry_base_delay=_env_float(env, "TRACKER_RETRY_BASE_DELAY", 1.0),
            max_retries=_env_int(env, "TRACKER_MAX_RETRIES", 3),
            max_retry_duration=_env_float(env, "TRACKER_MAX_RETRY_DURATION", 30.0),
            poll_interval=_env_float(env, "TRACKER_POLL_INTERVAL", 5.0),
            request_timeout=_env_float(env, "TRACKER_REQUEST_TIMEOUT", 10.0),
        )

    def save_policy(self):
        from .scheduler import SavePolicy

        return SavePolicy(
            debounce_delay=self.save_debounce,
            min_interval=self.min_save_interval,
            base_delay=self.retry_base_delay,
            max_retries=self.max_retries,
            max_retry_duration=self.max_retry_duration,
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler; safe to call more than once."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
