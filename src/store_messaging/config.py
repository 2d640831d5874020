"""Runtime configuration read from the environment."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import structlog


@dataclass(frozen=True)
class Settings:
    """Service settings."""

    log_level: str = "INFO"
    max_body_length: int = 4000
    send_rate_limit: int = 30  # sends per viewer per window
    send_rate_window: float = 60.0
    subscriber_queue_size: int = 16
    retry_attempts: int = 3
    retry_max_wait: float = 2.0
    store_directory_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            max_body_length=int(os.getenv("MAX_BODY_LENGTH", cls.max_body_length)),
            send_rate_limit=int(os.getenv("SEND_RATE_LIMIT", cls.send_rate_limit)),
            send_rate_window=float(os.getenv("SEND_RATE_WINDOW", cls.send_rate_window)),
            subscriber_queue_size=int(
                os.getenv("SUBSCRIBER_QUEUE_SIZE", cls.subscriber_queue_size)
            ),
            retry_attempts=int(os.getenv("RETRY_ATTEMPTS", cls.retry_attempts)),
            retry_max_wait=float(os.getenv("RETRY_MAX_WAIT", cls.retry_max_wait)),
            store_directory_file=os.getenv("STORE_DIRECTORY_FILE") or None,
        )


def configure_logging(settings: Settings) -> None:
    """Route structlog output through the standard level filter."""
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
