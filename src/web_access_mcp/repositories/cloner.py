import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import override

from web_access_mcp.errors import CloneFailedError
from web_access_mcp.repositories.identity import RepositoryIdentity
from web_access_mcp.utils.logging import BASE_LOGGER
from web_access_mcp.utils.subprocess import CommandError, run_command

logger = BASE_LOGGER.getChild("cloner")


class BaseCloner(ABC):
    @abstractmethod
    async def clone(self, identity: RepositoryIdentity, destination: Path) -> None: ...


class GitCloner(BaseCloner):
    """Shallow clones repositories with the `git` CLI."""

    def __init__(self, timeout: float | None = 120, git: str = "git"):
        self.timeout = timeout
        self.git = git

    @override
    async def clone(self, identity: RepositoryIdentity, destination: Path) -> None:
        """Clone `identity` into `destination`, replacing anything left over there.

        Raises:
            CloneFailedError: git is missing, timed out, or failed.
        """

        if destination.exists():
            await asyncio.to_thread(shutil.rmtree, destination, True)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CloneFailedError(str(identity), str(e)) from e

        logger.info(f"Cloning {identity} into {destination}")

        try:
            _ = await run_command(
                self.git,
                "clone",
                "--depth",
                "1",
                "--single-branch",
                identity.clone_url,
                str(destination),
                timeout=self.timeout,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except CommandError as e:
            await asyncio.to_thread(shutil.rmtree, destination, True)
            raise CloneFailedError(str(identity), e.msg) from e