"""A process-wide cache of local working copies of hosted repositories.

The first request for a repository creates an in-progress entry and starts a single clone task.
Every concurrent request for the same repository waits on that entry's event and observes the
same outcome. Failed entries are evicted once their waiters are released so a later request can
try again.
"""

import asyncio
import shutil
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from web_access_mcp.clients.github import RepositoryMetadataClient
from web_access_mcp.errors import CloneFailedError, RepositoryError, RepositoryTooLargeError
from web_access_mcp.repositories.cloner import BaseCloner
from web_access_mcp.repositories.identity import RepositoryIdentity
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("clone_cache")

KB_PER_MB = 1024


class CloneState(StrEnum):
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


class SessionEvent(StrEnum):
    """Agent session boundaries after which no working copy may be reused."""

    SWITCH = "switch"
    FORK = "fork"
    SHUTDOWN = "shutdown"


class CloneCacheEntry(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    identity: RepositoryIdentity
    path: Path
    state: CloneState = CloneState.IN_PROGRESS
    event: asyncio.Event = Field(default_factory=asyncio.Event, exclude=True)
    task: asyncio.Task | None = Field(default=None, exclude=True)  # pyright: ignore[reportMissingTypeArgument]
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    error: RepositoryError | None = Field(default=None, exclude=True)


class CloneCache:
    directory: Path

    def __init__(self, directory: Path, cloner: BaseCloner, metadata_client: RepositoryMetadataClient | None = None):
        self.directory = directory
        self.cloner = cloner
        self.metadata_client = metadata_client

        self._entries: dict[RepositoryIdentity, CloneCacheEntry] = {}
        self._lock = asyncio.Lock()

    @property
    def entries(self) -> list[CloneCacheEntry]:
        return list(self._entries.values())

    def get_entry(self, identity: RepositoryIdentity) -> CloneCacheEntry | None:
        return self._entries.get(identity)

    async def get_or_clone(self, identity: RepositoryIdentity, size_threshold_mb: float | None = None, force_clone: bool = False) -> Path:
        """Return the path of a ready working copy of the repository, cloning it if needed.

        Requests that arrive while a clone is in progress share its outcome, including its
        size threshold and `force_clone` setting.

        Raises:
            RepositoryTooLargeError: The repository exceeds `size_threshold_mb` and `force_clone` is not set.
            CloneFailedError: The clone failed or was cancelled.
        """

        async with self._lock:
            entry = self._entries.get(identity)

            if entry is None:
                entry = CloneCacheEntry(identity=identity, path=self.directory / identity.relative_path)
                self._entries[identity] = entry
                entry.task = asyncio.create_task(self._populate(entry, size_threshold_mb=size_threshold_mb, force_clone=force_clone))
            else:
                logger.debug(f"Attaching to the {entry.state} clone of {identity}")

        await entry.event.wait()

        if entry.state is CloneState.READY:
            return entry.path

        raise entry.error or CloneFailedError(str(identity), "unknown error")

    async def _populate(self, entry: CloneCacheEntry, size_threshold_mb: float | None, force_clone: bool) -> None:
        try:
            if not force_clone and size_threshold_mb is not None:
                await self._check_size(entry.identity, size_threshold_mb)

            await self.cloner.clone(entry.identity, entry.path)
        except RepositoryError as e:
            entry.state = CloneState.FAILED
            entry.error = e
        except asyncio.CancelledError:
            entry.state = CloneState.FAILED
            entry.error = CloneFailedError(str(entry.identity), "clone was cancelled")
            raise
        else:
            entry.state = CloneState.READY
            logger.info(f"Clone of {entry.identity} is ready at {entry.path}")
        finally:
            if entry.state is CloneState.IN_PROGRESS:
                entry.state = CloneState.FAILED

            entry.event.set()

            if entry.state is CloneState.FAILED and self._entries.get(entry.identity) is entry:
                del self._entries[entry.identity]

    async def _check_size(self, identity: RepositoryIdentity, size_threshold_mb: float) -> None:
        if self.metadata_client is None:
            return

        size_kb = await self.metadata_client.get_size_kb(identity)
        if size_kb is None:
            logger.info(f"Could not look up the size of {identity}, cloning anyway")
            return

        if (size_mb := size_kb / KB_PER_MB) > size_threshold_mb:
            raise RepositoryTooLargeError(str(identity), size_mb=size_mb, threshold_mb=size_threshold_mb)

    async def invalidate(self, event: SessionEvent) -> None:
        """Drop every entry, cancelling in-progress clones and removing all working copies.

        Requests made meanwhile wait on the lock until the working copies are removed.
        """

        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()

            if not entries:
                return

            logger.info(f"Invalidating {len(entries)} cached clones on session {event}")

            tasks = [entry.task for entry in entries if entry.task is not None and not entry.task.done()]
            for task in tasks:
                _ = task.cancel()

            _ = await asyncio.gather(*tasks, return_exceptions=True)

            for entry in entries:
                await asyncio.to_thread(shutil.rmtree, entry.path, True)
