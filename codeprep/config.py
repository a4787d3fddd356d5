from __future__ import annotations

import logging
import re
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

from codeprep.errors import ConfigurationError

load_dotenv()

_DEFAULT_SOCKET_URL = "http://localhost:5000"
_API_SUFFIX = re.compile(r"/api/?$", re.IGNORECASE)


class Settings(BaseSettings):
    API_URL: str = "http://localhost:5000/api"
    SOCKET_URL: Optional[str] = None
    REQUEST_TIMEOUT_S: float = 30.0
    WAKE_MAX_WAIT_S: float = 25.0
    WAKE_ATTEMPT_TIMEOUT_S: float = 8.0
    NETWORK_NOTICE_COOLDOWN_S: float = 10.0
    SOCKET_RECONNECT_ATTEMPTS: int = 5
    SOCKET_RECONNECT_DELAY_S: float = 1.0
    SOCKET_CONNECT_TIMEOUT_S: float = 10.0
    CONNECT_ERROR_NOTICE_INTERVAL_S: float = 30.0
    AUTOSAVE_DEBOUNCE_S: float = 2.0
    AUTOSAVE_INTERVAL_S: float = 30.0
    TYPING_IDLE_S: float = 2.0
    DEFAULT_LANGUAGE: str = "cpp"
    DEFAULT_DURATION_S: int = 3600
    REQUIRE_PASSING_SCORE_TO_SUBMIT: bool = True
    MCQ_SECONDS_PER_QUESTION: float = 60.0
    MCQ_ANSWER_ADVANCE_S: float = 3.0
    MCQ_EXPIRY_ADVANCE_S: float = 2.0
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CODEPREP_",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def load(cls) -> "Settings":
        try:
            return cls()
        except Exception as exc:
            raise ConfigurationError(f"Failed to load configuration: {exc}") from exc


def socket_base_url(settings: Settings) -> str:
    """Socket.IO is served from the same origin as the REST API but not under ``/api``."""

    if settings.SOCKET_URL:
        return settings.SOCKET_URL.rstrip("/")
    if settings.API_URL:
        return _API_SUFFIX.sub("", settings.API_URL.strip())
    return _DEFAULT_SOCKET_URL


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level.upper(),
            format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    logging.getLogger("codeprep").setLevel(level.upper())


__all__ = ["Settings", "configure_logging", "socket_base_url"]
