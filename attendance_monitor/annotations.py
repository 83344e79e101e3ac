from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol, Sequence

import websocket
from pydantic import ValidationError

from .exceptions import ChannelDisconnected, MonitorError
from .models import AnnotationFrame, BoxStyle, Detection, SlotId

logger = logging.getLogger("attendance_monitor.annotations")

DEFAULT_RECONNECT_SECONDS = 3.0

FrameListener = Callable[[AnnotationFrame], None]


def map_box(
    box: Sequence[float] | None,
    native_width: float,
    native_height: float,
    viewport_width: float,
    viewport_height: float,
) -> BoxStyle | None:
    """Scale a detector box into viewport pixels; ``None`` means do not render."""
    if box is None or len(box) < 4:
        return None
    if viewport_width <= 0 or viewport_height <= 0:
        return None
    if native_width <= 0 or native_height <= 0:
        return None
    scale_x = viewport_width / native_width
    scale_y = viewport_height / native_height
    x, y, w, h = (float(value) for value in box[:4])
    return BoxStyle(left=x * scale_x, top=y * scale_y, width=w * scale_x, height=h * scale_y)


def overlay_boxes(
    frame: AnnotationFrame,
    viewport_width: float,
    viewport_height: float,
) -> list[tuple[Detection, BoxStyle]]:
    placed: list[tuple[Detection, BoxStyle]] = []
    for detection in frame.detections:
        style = map_box(detection.box, frame.native_width, frame.native_height, viewport_width, viewport_height)
        if style is not None:
            placed.append((detection, style))
    return placed


class AnnotationConnector(Protocol):
    def connect(self, url: str) -> AsyncContextManager[AsyncIterator[str]]: ...


class _WebSocketMessages:
    def __init__(self, ws: websocket.WebSocket):
        self._ws = ws

    def __aiter__(self) -> "_WebSocketMessages":
        return self

    async def __anext__(self) -> str:
        try:
            message = await asyncio.to_thread(self._ws.recv)
        except (websocket.WebSocketException, OSError) as exc:
            raise ChannelDisconnected(f"Annotation feed dropped: {exc}") from exc
        if not message:
            # recv() hands back an empty payload once the peer sends a close frame.
            raise ChannelDisconnected("Annotation feed closed by remote.")
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message


class WebSocketConnector:
    def __init__(self, token_provider=None, connect_timeout_seconds: float = 8.0):
        self.token_provider = token_provider
        self.connect_timeout_seconds = connect_timeout_seconds

    @asynccontextmanager
    async def connect(self, url: str) -> AsyncIterator[_WebSocketMessages]:
        header: list[str] = []
        if self.token_provider is not None:
            token = await asyncio.to_thread(self.token_provider.get_token)
            header.append(f"Authorization: Bearer {token}")
        try:
            ws = await asyncio.to_thread(
                websocket.create_connection,
                url,
                timeout=self.connect_timeout_seconds,
                header=header,
            )
        except (websocket.WebSocketException, OSError) as exc:
            raise ChannelDisconnected(f"Could not connect to {url}: {exc}") from exc
        ws.settimeout(None)
        try:
            yield _WebSocketMessages(ws)
        finally:
            # abort() wakes a recv() blocked in the worker thread.
            ws.abort()
            ws.shutdown()


class AnnotationChannel:
    """Live detection subscription for one camera slot.

    Each ``open`` starts a new subscription generation; frames carrying an
    older generation are dropped, so nothing from a previous slot or source
    reaches ``frame`` after a switch. On any disconnect the overlay is cleared
    to the neutral frame and one reconnect is attempted per backoff window
    until ``close`` or the next ``open``.
    """

    def __init__(
        self,
        connector: AnnotationConnector,
        url_for: Callable[[SlotId], str],
        reconnect_seconds: float = DEFAULT_RECONNECT_SECONDS,
        native_width: int = 640,
        native_height: int = 480,
        on_frame: FrameListener | None = None,
    ):
        self._connector = connector
        self._url_for = url_for
        self._reconnect_seconds = reconnect_seconds
        self._neutral = AnnotationFrame.neutral(native_width, native_height)
        self._on_frame = on_frame
        self._frame = self._neutral
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._slot_id: SlotId | None = None
        self._source_key = ""
        self._connected = False

    @property
    def frame(self) -> AnnotationFrame:
        return self._frame

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def slot_id(self) -> SlotId | None:
        return self._slot_id

    @property
    def source_key(self) -> str:
        return self._source_key

    def overlay(self, viewport_width: float, viewport_height: float) -> list[tuple[Detection, BoxStyle]]:
        return overlay_boxes(self._frame, viewport_width, viewport_height)

    async def open(self, slot_id: SlotId | str, source_key: str | None) -> None:
        await self.close()
        if not slot_id or not source_key:
            logger.debug("No active source; annotation channel stays idle.")
            return
        slot = SlotId(slot_id)
        self._slot_id = slot
        self._source_key = source_key
        generation = self._generation
        self._task = asyncio.create_task(
            self._run(generation, slot, source_key),
            name=f"annotations-{slot.value}",
        )

    async def close(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._connected = False
        self._slot_id = None
        self._source_key = ""
        self._publish(self._neutral)

    def deliver(self, generation: int, raw: str | bytes) -> bool:
        if generation != self._generation:
            logger.debug("Dropping annotation frame from stale subscription %d.", generation)
            return False
        try:
            frame = AnnotationFrame.model_validate_json(raw)
        except ValidationError as exc:
            logger.debug("Ignoring malformed annotation message: %s", exc)
            return False
        self._publish(frame)
        return True

    def _publish(self, frame: AnnotationFrame) -> None:
        self._frame = frame
        if self._on_frame is None:
            return
        try:
            self._on_frame(frame)
        except Exception:
            logger.exception("Annotation frame listener failed")

    async def _run(self, generation: int, slot: SlotId, source_key: str) -> None:
        url = self._url_for(slot)
        while generation == self._generation:
            try:
                async with self._connector.connect(url) as messages:
                    self._connected = True
                    logger.info("[annotations %s] connected (source: %s).", slot.value, source_key)
                    async for raw in messages:
                        self.deliver(generation, raw)
                raise ChannelDisconnected("Annotation feed ended.")
            except MonitorError as exc:
                logger.warning("[annotations %s] %s", slot.value, exc)
            except (OSError, websocket.WebSocketException) as exc:
                logger.warning("[annotations %s] transport error: %s", slot.value, exc)

            if generation != self._generation:
                return
            self._connected = False
            self._publish(self._neutral)
            logger.info("[annotations %s] reconnecting in %.1fs.", slot.value, self._reconnect_seconds)
            await asyncio.sleep(self._reconnect_seconds)
