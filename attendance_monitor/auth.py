from __future__ import annotations

import logging
import threading
from typing import Any

import requests

from .config import MonitorSettings
from .exceptions import BackendError, MissingCredentials

logger = logging.getLogger("attendance_monitor.auth")


class StaticTokenProvider:
    """Hands out a bearer token issued elsewhere."""

    def __init__(self, token: str) -> None:
        self._token = token

    def get_token(self) -> str:
        if not self._token:
            raise MissingCredentials("No access token configured.")
        return self._token

    def invalidate(self) -> None:
        # Refresh belongs to whoever issued the token.
        return None


class PasswordTokenProvider:
    def __init__(self, settings: MonitorSettings, session: Any | None = None) -> None:
        self.settings = settings
        self.session = session if session is not None else requests.Session()
        self._lock = threading.Lock()
        self._token: str | None = None

    def get_token(self) -> str:
        with self._lock:
            if self._token:
                return self._token
        return self._login()

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    def _login(self) -> str:
        if not self.settings.login_username:
            raise MissingCredentials("No login credentials configured.")
        url = f"{self.settings.backend_url}{self.settings.login_path}"
        try:
            resp = self.session.post(
                url,
                json={"username": self.settings.login_username, "password": self.settings.login_password},
                timeout=self.settings.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise BackendError(f"Login request failed: {exc}") from exc
        if resp.status_code != 200:
            raise BackendError("Login rejected.", status_code=resp.status_code)
        try:
            token = str(resp.json()["access_token"])
        except (ValueError, KeyError, TypeError) as exc:
            raise BackendError("Login response did not contain an access token.") from exc
        with self._lock:
            self._token = token
        logger.info("Obtained access token for '%s'.", self.settings.login_username)
        return token


def build_token_provider(settings: MonitorSettings, session: Any | None = None):
    if settings.access_token:
        return StaticTokenProvider(settings.access_token)
    if settings.login_username:
        return PasswordTokenProvider(settings, session=session)
    return StaticTokenProvider("")
