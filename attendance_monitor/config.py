from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
LOG_DIR = BASE_DIR / "logs"

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class MonitorSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MONITOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend_url: str = "http://localhost:8000"
    ws_url: str = "ws://localhost:8000"

    # Identity collaborator: either a pre-issued token or credentials for the login endpoint.
    access_token: str = ""
    login_username: str = ""
    login_password: str = ""
    login_path: str = "/auth/token"

    request_timeout_seconds: float = Field(default=8.0, gt=0)

    # Wall-clock wait between remote release and local open; no hardware acknowledgement exists.
    settle_delay_seconds: float = Field(default=1.0, ge=0)
    reconnect_seconds: float = Field(default=3.0, gt=0)
    poll_interval_seconds: float = Field(default=3.0, gt=0)
    page_size: int = Field(default=5, ge=1)

    native_width: int = Field(default=640, gt=0)
    native_height: int = Field(default=480, gt=0)
    default_late_time: str = "09:30"

    capture_camera_index: int = 0
    capture_width: int = 640
    capture_height: int = 480
    capture_jpeg_quality: int = Field(default=95, ge=1, le=100)

    explicit_poll_cursor: bool = False

    log_dir: Path = LOG_DIR
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("backend_url", "ws_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("default_late_time")
    @classmethod
    def _validate_late_time(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError("default_late_time must be HH:MM")
        return value


def is_valid_hhmm(value: str) -> bool:
    return bool(value) and bool(_HHMM.match(value))


@lru_cache(maxsize=1)
def get_settings() -> MonitorSettings:
    return MonitorSettings()
