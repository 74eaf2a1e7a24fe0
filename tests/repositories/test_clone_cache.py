import asyncio
import shutil
import time
from pathlib import Path
from typing import override
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from web_access_mcp.errors import CloneFailedError, RepositoryTooLargeError
from web_access_mcp.repositories.clone_cache import CloneCache, CloneState, SessionEvent
from web_access_mcp.repositories.cloner import BaseCloner
from web_access_mcp.repositories.identity import RepositoryIdentity

HELLO = RepositoryIdentity(host="github.com", owner="octo", name="hello")
WORLD = RepositoryIdentity(host="github.com", owner="octo", name="world")


class FakeCloner(BaseCloner):
    """Writes a marker file instead of cloning. Clones block until `release` is set."""

    def __init__(self, failures: int = 0):
        self.calls: list[RepositoryIdentity] = []
        self.failures = failures
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.release.set()

    @override
    async def clone(self, identity: RepositoryIdentity, destination: Path) -> None:
        self.calls.append(identity)
        self.started.set()

        await self.release.wait()

        if self.failures:
            self.failures -= 1
            raise CloneFailedError(str(identity), "remote hung up")

        destination.mkdir(parents=True)
        (destination / "README.md").write_text(f"# {identity.name}\n")


@pytest.fixture
def cloner() -> FakeCloner:
    return FakeCloner()


@pytest.fixture
def metadata_client() -> MagicMock:
    client = MagicMock()
    client.get_size_kb = AsyncMock(return_value=10 * 1024)
    return client


@pytest.fixture
def clone_cache(tmp_path: Path, cloner: FakeCloner, metadata_client: MagicMock) -> CloneCache:
    return CloneCache(directory=tmp_path / "repos", cloner=cloner, metadata_client=metadata_client)


async def test_clone(clone_cache: CloneCache, cloner: FakeCloner, tmp_path: Path):
    path = await clone_cache.get_or_clone(HELLO, size_threshold_mb=350)

    assert path == tmp_path / "repos" / "github.com" / "octo" / "hello"
    assert (path / "README.md").read_text() == "# hello\n"
    assert cloner.calls == [HELLO]

    entry = clone_cache.get_entry(HELLO)
    assert entry is not None
    assert entry.state == CloneState.READY


async def test_ready_clones_are_reused(clone_cache: CloneCache, cloner: FakeCloner, metadata_client: MagicMock):
    first = await clone_cache.get_or_clone(HELLO, size_threshold_mb=350)
    second = await clone_cache.get_or_clone(HELLO, size_threshold_mb=350)

    assert first == second
    assert cloner.calls == [HELLO]
    metadata_client.get_size_kb.assert_awaited_once()


async def test_concurrent_requests_share_one_clone(clone_cache: CloneCache, cloner: FakeCloner):
    cloner.release.clear()

    waiters = [asyncio.create_task(clone_cache.get_or_clone(HELLO)) for _ in range(5)]
    await cloner.started.wait()

    assert [entry.state for entry in clone_cache.entries] == [CloneState.IN_PROGRESS]

    cloner.release.set()
    paths = await asyncio.gather(*waiters)

    assert len(set(paths)) == 1
    assert cloner.calls == [HELLO]


async def test_concurrent_requests_share_the_failure(clone_cache: CloneCache):
    clone_cache.cloner = FakeCloner(failures=1)

    results = await asyncio.gather(*(clone_cache.get_or_clone(HELLO) for _ in range(3)), return_exceptions=True)

    assert all(isinstance(result, CloneFailedError) for result in results)
    assert len({id(result) for result in results}) == 1


async def test_different_repositories_clone_independently(clone_cache: CloneCache, cloner: FakeCloner):
    hello, world = await asyncio.gather(clone_cache.get_or_clone(HELLO), clone_cache.get_or_clone(WORLD))

    assert hello != world
    assert sorted(str(identity) for identity in cloner.calls) == ["octo/hello", "octo/world"]


async def test_too_large(clone_cache: CloneCache, cloner: FakeCloner, metadata_client: MagicMock):
    metadata_client.get_size_kb.return_value = 500 * 1024

    with pytest.raises(RepositoryTooLargeError) as exc_info:
        _ = await clone_cache.get_or_clone(HELLO, size_threshold_mb=350)

    assert exc_info.value.size_mb == 500
    assert str(exc_info.value) == "Repository octo/hello is 500MB, which exceeds the clone threshold of 350MB"
    assert cloner.calls == []
    assert clone_cache.get_entry(HELLO) is None


async def test_force_clone_skips_the_size_check(clone_cache: CloneCache, cloner: FakeCloner, metadata_client: MagicMock):
    metadata_client.get_size_kb.return_value = 500 * 1024

    path = await clone_cache.get_or_clone(HELLO, size_threshold_mb=350, force_clone=True)

    assert path.is_dir()
    assert cloner.calls == [HELLO]
    metadata_client.get_size_kb.assert_not_awaited()


async def test_unknown_size_clones_anyway(clone_cache: CloneCache, cloner: FakeCloner, metadata_client: MagicMock):
    metadata_client.get_size_kb.return_value = None

    _ = await clone_cache.get_or_clone(HELLO, size_threshold_mb=350)

    assert cloner.calls == [HELLO]


async def test_no_threshold_skips_the_size_check(clone_cache: CloneCache, metadata_client: MagicMock):
    _ = await clone_cache.get_or_clone(HELLO, size_threshold_mb=None)

    metadata_client.get_size_kb.assert_not_awaited()


async def test_failed_clones_are_retried(clone_cache: CloneCache):
    cloner = FakeCloner(failures=1)
    clone_cache.cloner = cloner

    with pytest.raises(CloneFailedError, match="remote hung up"):
        _ = await clone_cache.get_or_clone(HELLO)

    assert clone_cache.get_entry(HELLO) is None

    path = await clone_cache.get_or_clone(HELLO)

    assert path.is_dir()
    assert cloner.calls == [HELLO, HELLO]


async def test_invalidate_removes_working_copies(clone_cache: CloneCache):
    hello = await clone_cache.get_or_clone(HELLO)
    world = await clone_cache.get_or_clone(WORLD)

    await clone_cache.invalidate(SessionEvent.SWITCH)

    assert clone_cache.entries == []
    assert not hello.exists()
    assert not world.exists()


async def test_invalidate_cancels_in_progress_clones(clone_cache: CloneCache, cloner: FakeCloner):
    cloner.release.clear()

    waiter = asyncio.create_task(clone_cache.get_or_clone(HELLO))
    await cloner.started.wait()

    await clone_cache.invalidate(SessionEvent.FORK)

    with pytest.raises(CloneFailedError, match="clone was cancelled"):
        await waiter

    assert clone_cache.entries == []

    cloner.release.set()
    path = await clone_cache.get_or_clone(HELLO)

    assert (path / "README.md").is_file()
    assert cloner.calls == [HELLO, HELLO]


async def test_requests_during_invalidate_get_a_fresh_working_copy(clone_cache: CloneCache, cloner: FakeCloner):
    _ = await clone_cache.get_or_clone(HELLO)
    rmtree = shutil.rmtree

    def slow_rmtree(path: Path, ignore_errors: bool = False) -> None:
        time.sleep(0.2)
        rmtree(path, ignore_errors)

    with patch("web_access_mcp.repositories.clone_cache.shutil.rmtree", slow_rmtree):
        invalidating = asyncio.create_task(clone_cache.invalidate(SessionEvent.SWITCH))
        await asyncio.sleep(0)

        path = await clone_cache.get_or_clone(HELLO)
        await invalidating

    assert (path / "README.md").is_file()
    assert cloner.calls == [HELLO, HELLO]


async def test_invalidate_empty_cache(clone_cache: CloneCache):
    await clone_cache.invalidate(SessionEvent.SHUTDOWN)

    assert clone_cache.entries == []
