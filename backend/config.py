"""
Application configuration and logging setup for FormFlow.

Settings are loaded from environment variables and an optional .env file.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    APP_NAME: str = "FormFlow API"
    SETTING_VERSION: str = "0.3.0"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    RELOAD: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./formflow.db"
    DB_ECHO: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["*"]
    CORS_ALLOW_HEADERS: List[str] = ["*"]
    CORS_EXPOSE_HEADERS: List[str] = ["X-Request-ID"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

    # Workflow engine
    WORKFLOW_MAX_LOOP_ITERATIONS: int = 100
    WORKFLOW_BULK_UPDATE_BATCH_SIZE: int = 50
    WORKFLOW_MAX_RECORDS_PER_ACTION: int = 100
    RESUME_POLL_INTERVAL_SECONDS: int = 60
    RESUME_POLLING_IN_API: bool = False  # Poll from the API process instead of worker.py


settings = Settings()


# Request id for the request currently being handled (set by LoggingMiddleware)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    """Injects the current request id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True

    def new_request_id(self) -> str:
        request_id = uuid.uuid4().hex[:12]
        request_id_var.set(request_id)
        return request_id

    def clear(self) -> None:
        request_id_var.set(None)


_request_id_filter: Optional[RequestIdFilter] = None


def setup_logging() -> Tuple[logging.Logger, RequestIdFilter]:
    """
    Configure root logging once and return the app logger with its request id filter.

    Safe to call multiple times (the API and the worker both call it).
    """
    global _request_id_filter

    root = logging.getLogger()
    if _request_id_filter is None:
        _request_id_filter = RequestIdFilter()

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(settings.LOG_FORMAT))
        handler.addFilter(_request_id_filter)

        root.addHandler(handler)
        root.setLevel(settings.LOG_LEVEL.upper())

        # SQLAlchemy is chatty at INFO
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger("formflow"), _request_id_filter
