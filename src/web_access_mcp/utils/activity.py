import itertools
from collections import deque
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field

from web_access_mcp.utils.logging import BASE_LOGGER
from web_access_mcp.utils.rate_limit import RateLimitStatus

logger = BASE_LOGGER.getChild("activity")


class ActivityKind(StrEnum):
    SEARCH = "search"
    FETCH = "fetch"


class ActivityEntry(BaseModel):
    id: int
    kind: ActivityKind
    target: str
    started: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    finished: datetime | None = None
    status: int | None = None
    error: str | None = None

    @computed_field()
    @property
    def duration(self) -> float | None:
        if self.finished is None:
            return None

        return (self.finished - self.started).total_seconds()

    @property
    def is_finished(self) -> bool:
        return self.finished is not None


class ActivityMonitor:
    """Records the start and the single terminal outcome of every search and fetch."""

    def __init__(self, history: int = 100):
        self._entries: deque[ActivityEntry] = deque(maxlen=history)
        self._ids = itertools.count(1)
        self.rate_limit: RateLimitStatus | None = None

    @property
    def entries(self) -> list[ActivityEntry]:
        return list(self._entries)

    def log_start(self, kind: ActivityKind, target: str) -> int:
        entry = ActivityEntry(id=next(self._ids), kind=kind, target=target)
        self._entries.append(entry)

        logger.info(f"Started {kind} #{entry.id}: {target}")

        return entry.id

    def log_complete(self, activity_id: int, status: int) -> None:
        if entry := self._finish(activity_id):
            entry.status = status
            logger.info(f"Completed {entry.kind} #{entry.id} with status {status} in {entry.duration:.2f}s")

    def log_error(self, activity_id: int, message: str) -> None:
        if entry := self._finish(activity_id):
            entry.error = message
            logger.warning(f"Failed {entry.kind} #{entry.id} after {entry.duration:.2f}s: {message}")

    def update_rate_limit(self, status: RateLimitStatus) -> None:
        self.rate_limit = status

    def _finish(self, activity_id: int) -> ActivityEntry | None:
        entry = next((entry for entry in self._entries if entry.id == activity_id), None)

        if entry is None:
            logger.warning(f"Activity #{activity_id} is unknown or has aged out of the history")
            return None

        if entry.is_finished:
            logger.warning(f"Activity #{activity_id} already finished, ignoring a second outcome")
            return None

        entry.finished = datetime.now(tz=UTC)
        return entry
