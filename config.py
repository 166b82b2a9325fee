"""
Runtime configuration for the ReadBooks API.

Values come from the process environment, optionally seeded from a ``.env``
file in the working directory.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List

import structlog
from dotenv import load_dotenv

load_dotenv()


def _origins(raw: str) -> List[str]:
    return [o.strip() for o in raw.split(",") if o.strip()] or ["*"]


@dataclass
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "readBooks"
    store_timeout_ms: int = 5000
    firebase_service_key: str = ""
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000
    env: str = "dev"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            store_timeout_ms=int(os.getenv("STORE_TIMEOUT_MS", cls.store_timeout_ms)),
            firebase_service_key=os.getenv("FB_SERVICE_KEY", ""),
            cors_origins=_origins(os.getenv("CORS_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=int(os.getenv("PORT", cls.port)),
            env=os.getenv("ENV", cls.env),
        )

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Set up structlog once per process.

    Console output is meant for local development; JSON lines for anything
    shipped to a log collector.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        cache_logger_on_first_use=True,
    )
