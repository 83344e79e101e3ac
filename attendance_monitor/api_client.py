from __future__ import annotations

import asyncio
import logging
import re
import threading
from datetime import date
from pathlib import PurePosixPath
from typing import Any, TypeVar
from urllib.parse import quote

import requests
from pydantic import BaseModel, ValidationError

from .config import MonitorSettings
from .exceptions import BackendError, MonitorError
from .models import CameraMapping, DiscoveredDevice, LogEntry, SlotId, Subject

logger = logging.getLogger("attendance_monitor.api_client")

ModelT = TypeVar("ModelT", bound=BaseModel)

EXPORT_FORMATS = ("csv", "xlsx")
_FILENAME_RE = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.IGNORECASE)


def _slot_value(slot_id: SlotId | str) -> str:
    return SlotId(slot_id).value


def _plain_filename(raw: str) -> str:
    """Last path component of a server-supplied name; empty when nothing usable is left."""
    name = PurePosixPath(raw.strip().replace("\\", "/")).name
    return "" if name in (".", "..") else name


def _error_detail(resp: Any) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("detail") is not None:
        return str(body["detail"])
    return None


def _parse_list(model: type[ModelT], body: Any, what: str) -> list[ModelT]:
    if not isinstance(body, list):
        raise BackendError(f"Malformed {what} response: expected a list.")
    try:
        return [model.model_validate(item) for item in body]
    except ValidationError as exc:
        raise BackendError(f"Malformed {what} response: {exc}") from exc


class BackendClient:
    """Bearer-authenticated HTTP client for the recognition backend.

    Requests are blocking (``requests``) and are pushed off the event loop with
    ``asyncio.to_thread``; every public coroutine is safe to await from the
    monitor's loop. Any object exposing ``request(method, url, **kwargs)`` can
    stand in for the session.
    """

    def __init__(self, settings: MonitorSettings, token_provider, session: Any | None = None):
        self.settings = settings
        self.token_provider = token_provider
        self.session = session if session is not None else requests.Session()
        self._session_lock = threading.Lock()

    # -- transport -----------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: Any = None,
        retry_auth: bool = True,
    ):
        token = self.token_provider.get_token()
        url = f"{self.settings.backend_url}{path}"
        clean_params = {key: value for key, value in (params or {}).items() if value is not None}
        kwargs: dict[str, Any] = {
            "headers": {"Authorization": f"Bearer {token}"},
            "timeout": self.settings.request_timeout_seconds,
        }
        if clean_params:
            kwargs["params"] = clean_params
        if payload is not None:
            kwargs["json"] = payload

        try:
            with self._session_lock:
                resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 401 and retry_auth:
            self.token_provider.invalidate()
            return self._request(method, path, params=params, payload=payload, retry_auth=False)
        if not 200 <= resp.status_code < 300:
            detail = _error_detail(resp)
            message = f"{method} {path} returned {resp.status_code}"
            if detail:
                message = f"{message}: {detail}"
            raise BackendError(message, status_code=resp.status_code, detail=detail)
        return resp

    async def _call(self, method: str, path: str, **kwargs: Any):
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    async def _call_json(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = await self._call(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise BackendError(f"{method} {path} returned invalid JSON") from exc

    # -- device control ------------------------------------------------

    async def _control_camera(self, slot_id: SlotId | str, action: str) -> bool:
        slot = _slot_value(slot_id)
        try:
            await self._call("POST", f"/cameras/{slot}/{action}")
        except MonitorError as exc:
            logger.warning("Failed to %s backend camera '%s': %s", action, slot, exc)
            return False
        logger.info("Backend camera '%s' %s requested.", slot, action)
        return True

    async def open_camera(self, slot_id: SlotId | str) -> bool:
        return await self._control_camera(slot_id, "open")

    async def close_camera(self, slot_id: SlotId | str) -> bool:
        return await self._control_camera(slot_id, "close")

    async def get_camera_mapping(self) -> CameraMapping:
        body = await self._call_json("GET", "/cameras/config")
        if isinstance(body, dict) and isinstance(body.get("mapping"), dict):
            body = body["mapping"]
        try:
            return CameraMapping.model_validate(body)
        except ValidationError as exc:
            raise BackendError(f"Malformed camera config: {exc}") from exc

    async def set_camera_mapping(self, mapping: CameraMapping) -> CameraMapping:
        await self._call("POST", "/cameras/config", payload=mapping.model_dump())
        return mapping

    async def discover_devices(self) -> list[DiscoveredDevice]:
        body = await self._call_json("GET", "/cameras/discover")
        devices = body.get("devices", []) if isinstance(body, dict) else body
        return [device for device in _parse_list(DiscoveredDevice, devices, "device") if device.readable]

    # -- attendance log ------------------------------------------------

    async def fetch_logs(self, start_date: date, end_date: date, subject_id: int | None = None) -> list[LogEntry]:
        body = await self._call_json(
            "GET",
            "/attendance/logs",
            params={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "subject_id": subject_id,
            },
        )
        return _parse_list(LogEntry, body, "log")

    async def poll_logs(self, after_id: int | None = None) -> list[LogEntry]:
        body = await self._call_json("GET", "/attendance/poll", params={"after_id": after_id})
        return _parse_list(LogEntry, body, "poll")

    async def student_total(self, subject_id: int) -> int:
        body = await self._call_json("GET", f"/subjects/{subject_id}/student_count")
        if not isinstance(body, dict):
            raise BackendError("Malformed student count response: expected an object.")
        try:
            return int(body.get("total_students") or 0)
        except (TypeError, ValueError) as exc:
            raise BackendError(f"Malformed student count: {body.get('total_students')!r}") from exc

    async def set_active_subject(self, subject_id: int | None) -> dict[str, Any]:
        return await self._call_json("POST", "/attendance/set_active_subject", payload={"subject_id": subject_id})

    async def start_attendance(self) -> None:
        await self._call("POST", "/attendance/start")

    async def stop_attendance(self) -> None:
        await self._call("POST", "/attendance/stop")

    async def download_export(self, day: date, subject_id: int | None, fmt: str) -> tuple[str, bytes]:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt}")
        resp = await self._call(
            "GET",
            "/attendance/export",
            params={
                "start_date": day.isoformat(),
                "end_date": day.isoformat(),
                "subject_id": subject_id,
                "format": fmt,
            },
        )
        filename = f"export-{day.isoformat()}.{fmt}"
        disposition = resp.headers.get("content-disposition")
        if disposition:
            match = _FILENAME_RE.search(disposition)
            if match:
                filename = _plain_filename(match.group(1)) or filename
        return filename, resp.content

    # -- subjects ------------------------------------------------------

    async def list_subjects(self) -> list[Subject]:
        body = await self._call_json("GET", "/subjects")
        return _parse_list(Subject, body, "subject")

    async def update_subject_start_time(self, subject_id: int, class_start_time: str) -> None:
        await self._call(
            "PUT",
            f"/api/subjects/{subject_id}/time",
            payload={"class_start_time": class_start_time},
        )

    # -- URLs ----------------------------------------------------------

    def stream_url(self, slot_id: SlotId | str, source_key: str) -> str:
        return f"{self.settings.backend_url}/cameras/{_slot_value(slot_id)}/mjpeg?key={quote(source_key, safe='')}"

    def annotation_url(self, slot_id: SlotId | str) -> str:
        return f"{self.settings.ws_url}/ws/ai_results/{_slot_value(slot_id)}"

    def snapshot_url(self, snapshot_ref: str | None) -> str | None:
        if not snapshot_ref:
            return None
        return f"{self.settings.backend_url}/{snapshot_ref.replace(chr(92), '/').lstrip('/')}"
