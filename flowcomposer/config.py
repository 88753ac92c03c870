# flowcomposer/config.py
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    replicate_api_token: Optional[str] = None
    fal_key: Optional[str] = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    fal_queue_url: str = "https://queue.fal.run"
    poll_interval: float = 2.0
    max_polls: int = 300
    http_timeout: float = 60.0
    upload_dir: str = "uploads"
    public_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            replicate_api_token=os.getenv("REPLICATE_API_TOKEN") or None,
            fal_key=os.getenv("FAL_KEY") or None,
            replicate_base_url=os.getenv("REPLICATE_BASE_URL", cls.replicate_base_url).rstrip("/"),
            fal_queue_url=os.getenv("FAL_QUEUE_URL", cls.fal_queue_url).rstrip("/"),
            poll_interval=_float_env("FLOWCOMPOSER_POLL_INTERVAL", cls.poll_interval),
            max_polls=_int_env("FLOWCOMPOSER_MAX_POLLS", cls.max_polls),
            http_timeout=_float_env("FLOWCOMPOSER_HTTP_TIMEOUT", cls.http_timeout),
            upload_dir=os.getenv("FLOWCOMPOSER_UPLOAD_DIR", cls.upload_dir),
            public_base_url=os.getenv("FLOWCOMPOSER_PUBLIC_URL", cls.public_base_url).rstrip("/"),
            log_level=os.getenv("FLOWCOMPOSER_LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
