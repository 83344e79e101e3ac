from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable, Protocol, Sequence

from .exceptions import MonitorError, PollFailure, StaleResponseDiscarded
from .models import EntryStatus, LogEntry, StudentCount

logger = logging.getLogger("attendance_monitor.log_sync")

DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_PAGE_SIZE = 5
ELLIPSIS = "..."

ChangeListener = Callable[["LogSynchronizer"], None]


class LogSource(Protocol):
    async def fetch_logs(self, start_date: date, end_date: date, subject_id: int | None = None) -> list[LogEntry]: ...

    async def poll_logs(self, after_id: int | None = None) -> list[LogEntry]: ...

    async def student_total(self, subject_id: int) -> int: ...


@dataclass(frozen=True)
class Selection:
    day: date
    subject_id: int | None


def derive_status(entry: LogEntry) -> EntryStatus:
    if entry.action == "exit":
        return EntryStatus.EXIT
    if entry.status == "Late":
        return EntryStatus.LATE_ENTER
    return EntryStatus.ON_TIME_ENTER


def checked_in_count(entries: Iterable[LogEntry], subject_id: int | None) -> int:
    """Distinct people with at least one ``enter`` for the subject."""
    if subject_id is None:
        return 0
    return len({entry.person_id for entry in entries if entry.action == "enter" and entry.subject_id == subject_id})


def total_pages(count: int, page_size: int) -> int:
    return math.ceil(count / page_size) if count > 0 else 0


def paginate(entries: Sequence[LogEntry], page: int, page_size: int) -> list[LogEntry]:
    first = (page - 1) * page_size
    return list(entries[first : first + page_size])


def page_numbers(current: int, total: int, max_pages_to_show: int = 7, side_pages: int = 2) -> list[int | str]:
    if total <= max_pages_to_show:
        return list(range(1, total + 1))

    start = max(2, current - side_pages)
    end = min(total - 1, current + side_pages)

    numbers: list[int | str] = [1]
    if start > 2:
        numbers.append(ELLIPSIS)
    numbers.extend(range(start, end + 1))
    if end < total - 1:
        numbers.append(ELLIPSIS)
    if total > 1 and total not in numbers:
        numbers.append(total)

    collapsed: list[int | str] = []
    for item in numbers:
        if item == ELLIPSIS and collapsed and collapsed[-1] == ELLIPSIS:
            continue
        collapsed.append(item)
    return collapsed


def _dedupe(entries: Iterable[LogEntry]) -> list[LogEntry]:
    seen: set[int] = set()
    unique: list[LogEntry] = []
    for entry in entries:
        if entry.id in seen:
            continue
        seen.add(entry.id)
        unique.append(entry)
    return unique


class LogSynchronizer:
    """Attendance log view for one (date, subject) selection.

    ``bootstrap`` replaces the view with a full fetch for the selected day;
    while the day is today, ``poll_tick`` prepends the deltas returned by the
    poll endpoint, newest first, skipping ids already present and entries for
    other subjects. Every bootstrap opens a new selection generation and any
    poll response issued under an older generation is dropped. Deltas that
    arrive while a bootstrap is still in flight are held back and merged once
    it applies.
    """

    def __init__(
        self,
        source: LogSource,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        today: Callable[[], date] = date.today,
        explicit_cursor: bool = False,
        on_change: ChangeListener | None = None,
    ):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._source = source
        self._poll_interval = poll_interval_seconds
        self.page_size = page_size
        self._today = today
        self._explicit_cursor = explicit_cursor
        self._on_change = on_change

        self._selection: Selection | None = None
        self._generation = 0
        self._entries: tuple[LogEntry, ...] = ()
        self._known_ids: set[int] = set()
        self._cursor: int | None = None
        # Poll deltas that arrive while a bootstrap is in flight; None when no bootstrap is pending.
        self._buffered: list[LogEntry] | None = None
        self._page = 1
        self._roster_total = 0
        self._poll_task: asyncio.Task | None = None

    # -- view ----------------------------------------------------------

    @property
    def selection(self) -> Selection | None:
        return self._selection

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        return self._entries

    @property
    def page(self) -> int:
        return self._page

    @property
    def total_pages(self) -> int:
        return total_pages(len(self._entries), self.page_size)

    @property
    def current_page_entries(self) -> list[LogEntry]:
        return paginate(self._entries, self._page, self.page_size)

    @property
    def viewing_today(self) -> bool:
        return self._selection is not None and self._selection.day == self._today()

    @property
    def roster_total(self) -> int:
        return self._roster_total

    @property
    def student_count(self) -> StudentCount:
        subject_id = self._selection.subject_id if self._selection else None
        return StudentCount(checked=checked_in_count(self._entries, subject_id), total=self._roster_total)

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def set_page(self, page: int) -> bool:
        if 1 <= page <= self.total_pages:
            self._page = page
            return True
        return False

    def page_numbers(self) -> list[int | str]:
        return page_numbers(self._page, self.total_pages)

    # -- synchronisation -----------------------------------------------

    async def select(self, day: date, subject_id: int | None) -> None:
        previous = self._selection
        subject_changed = previous is None or previous.subject_id != subject_id
        if subject_changed:
            self._roster_total = 0
        await self.bootstrap(day, subject_id)
        if subject_changed:
            await self.refresh_roster()
        if self.viewing_today:
            self.start()
        else:
            await self.stop()

    async def bootstrap(self, day: date, subject_id: int | None) -> None:
        self._generation += 1
        generation = self._generation
        self._selection = Selection(day=day, subject_id=subject_id)
        self._page = 1
        if self._buffered is None:
            self._buffered = []

        try:
            fetched = await self._source.fetch_logs(day, day, subject_id)
        except MonitorError as exc:
            logger.error("Failed to fetch logs for %s (subject=%s): %s", day, subject_id, exc)
            fetched = []
        except asyncio.CancelledError:
            if generation == self._generation:
                self._buffered = None
            raise

        try:
            self._ensure_current(generation)
        except StaleResponseDiscarded as exc:
            logger.debug("%s", exc)
            return

        entries = _dedupe(fetched)
        self._entries = tuple(entries)
        self._known_ids = {entry.id for entry in entries}
        self._cursor = max(self._known_ids, default=None)
        self._page = 1
        logger.info("Loaded %d log entries for %s (subject=%s).", len(entries), day, subject_id)

        buffered, self._buffered = self._buffered or [], None
        if buffered and self.viewing_today:
            self._merge(buffered, notify=False)
        self._notify()

    async def poll_tick(self) -> int:
        if not self.viewing_today:
            return 0
        generation = self._generation
        try:
            delta = await self._fetch_delta()
            if self._buffered is not None:
                # The server cursor has already moved past these; the pending bootstrap merges them.
                self._buffered.extend(delta)
                return 0
            self._ensure_current(generation)
        except PollFailure as exc:
            logger.warning("%s", exc)
            return 0
        except StaleResponseDiscarded as exc:
            logger.debug("%s", exc)
            return 0
        return self._merge(delta)

    async def refresh_roster(self) -> None:
        subject_id = self._selection.subject_id if self._selection else None
        if subject_id is None:
            self._roster_total = 0
            self._notify()
            return
        try:
            total = await self._source.student_total(subject_id)
        except MonitorError as exc:
            logger.error("Failed to fetch roster total for subject %s: %s", subject_id, exc)
            total = 0
        if self._selection is None or self._selection.subject_id != subject_id:
            logger.debug("Dropping roster total for subject %s; selection changed.", subject_id)
            return
        self._roster_total = total
        self._notify()

    async def tick(self) -> int:
        if not self.viewing_today:
            return 0
        added, _ = await asyncio.gather(self.poll_tick(), self.refresh_roster())
        return added

    def start(self) -> None:
        if self.polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name="log-poll")

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Log poll tick failed")

    async def _fetch_delta(self) -> list[LogEntry]:
        after_id = self._cursor if self._explicit_cursor else None
        try:
            return await self._source.poll_logs(after_id=after_id)
        except MonitorError as exc:
            raise PollFailure(f"Failed to poll new logs: {exc}") from exc

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise StaleResponseDiscarded(f"Discarding response for selection generation {generation}.")

    def _merge(self, delta: Sequence[LogEntry], notify: bool = True) -> int:
        subject_id = self._selection.subject_id if self._selection else None
        fresh: list[LogEntry] = []
        for entry in delta:
            if self._cursor is None or entry.id > self._cursor:
                self._cursor = entry.id
            if subject_id is not None and entry.subject_id != subject_id:
                continue
            if entry.id in self._known_ids:
                continue
            self._known_ids.add(entry.id)
            fresh.append(entry)

        if not fresh:
            return 0
        fresh.sort(key=lambda entry: entry.timestamp, reverse=True)
        self._entries = tuple(fresh) + self._entries
        logger.info("Merged %d new log entries.", len(fresh))
        if notify:
            self._notify()
        return len(fresh)

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception:
            logger.exception("Log view listener failed")
