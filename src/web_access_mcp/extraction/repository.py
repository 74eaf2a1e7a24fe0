"""Render GitHub repository URLs from a local working copy, or from the API when no clone is used."""

import asyncio
from pathlib import Path

from pydantic import BaseModel

from web_access_mcp.clients.github import RepositoryMetadataClient
from web_access_mcp.config import CloneConfig
from web_access_mcp.errors import CloneFailedError, InvalidRepositoryError, RepositoryError, RepositoryTooLargeError
from web_access_mcp.repositories.clone_cache import CloneCache
from web_access_mcp.repositories.identity import RepositoryIdentity, RepositoryReference
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("repository")

README_NAMES = ["README.md", "README.rst", "README.txt", "README"]
SKIPPED_DIRECTORIES = {".git"}

MAX_TREE_DEPTH = 3
MAX_TREE_ENTRIES = 200
BINARY_SNIFF_BYTES = 8192

MARKDOWN_SUFFIXES = {".md", ".markdown"}


class RepositoryView(BaseModel):
    title: str
    content: str


def find_readme(directory: Path) -> Path | None:
    for name in README_NAMES:
        if (candidate := directory / name).is_file():
            return candidate

    return None


def render_tree(root: Path, max_depth: int = MAX_TREE_DEPTH, max_entries: int = MAX_TREE_ENTRIES) -> str:
    """An indented listing of `root`, directories first, cut off at `max_depth` levels and `max_entries` lines."""

    lines: list[str] = []

    def walk(directory: Path, depth: int) -> None:
        children = sorted(
            (child for child in directory.iterdir() if child.name not in SKIPPED_DIRECTORIES),
            key=lambda child: (not child.is_dir(), child.name.lower()),
        )

        for child in children:
            if len(lines) >= max_entries:
                return

            indent = "  " * depth
            if child.is_dir():
                lines.append(f"{indent}{child.name}/")
                if depth + 1 < max_depth:
                    walk(child, depth + 1)
            else:
                lines.append(f"{indent}{child.name}")

    walk(root, 0)

    if len(lines) >= max_entries:
        lines.append("...")

    return "\n".join(lines)


def read_text_file(path: Path) -> str:
    data = path.read_bytes()

    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        msg = f"{path.name} is a binary file"
        raise InvalidRepositoryError(msg)

    return data.decode("utf-8", errors="replace")


def resolve_in_clone(clone: Path, relative: str) -> Path:
    """Resolve a repository-relative path, refusing anything that escapes the working copy."""

    root = clone.resolve()
    target = (root / relative).resolve()

    if not target.is_relative_to(root):
        msg = f"Path {relative} is outside the repository"
        raise InvalidRepositoryError(msg)

    return target


def render_local_view(clone: Path, reference: RepositoryReference) -> RepositoryView:
    identity = reference.identity
    target = resolve_in_clone(clone, reference.path)

    if not target.exists():
        msg = f"Path {reference.path} not found in {identity}"
        raise InvalidRepositoryError(msg)

    title = f"{identity}/{reference.path}" if reference.path else str(identity)
    sections: list[str] = []

    if reference.ref:
        sections.append(f"_Showing the default branch of a shallow clone; requested ref `{reference.ref}`._")

    if target.is_file():
        text = read_text_file(target)
        if target.suffix.lower() in MARKDOWN_SUFFIXES:
            sections.append(text)
        else:
            sections.append(f"```{target.suffix.lstrip('.')}\n{text}\n```")

        return RepositoryView(title=title, content="\n\n".join(sections))

    if readme := find_readme(target):
        sections.append(read_text_file(readme))

    sections.append(f"## Files\n\n```\n{render_tree(target)}\n```")

    return RepositoryView(title=title, content="\n\n".join(sections))


class RepositoryViewer:
    """Views repositories through the clone cache, degrading to API metadata when no clone is available."""

    clone_cache: CloneCache | None
    metadata_client: RepositoryMetadataClient | None

    def __init__(
        self,
        clone_config: CloneConfig,
        clone_cache: CloneCache | None = None,
        metadata_client: RepositoryMetadataClient | None = None,
    ):
        self.clone_config = clone_config
        self.clone_cache = clone_cache
        self.metadata_client = metadata_client

    async def view(self, reference: RepositoryReference, force_clone: bool = False) -> RepositoryView:
        """Render a repository reference.

        Raises:
            InvalidRepositoryError: The path does not exist, escapes the clone, or is binary.
            RepositoryError: Neither a clone nor the API could provide a view.
        """

        if not self.clone_config.enabled or self.clone_cache is None:
            return await self.degraded_view(reference.identity, reason="Repository cloning is disabled.")

        try:
            clone = await self.clone_cache.get_or_clone(
                reference.identity,
                size_threshold_mb=self.clone_config.size_threshold_mb,
                force_clone=force_clone,
            )
        except (RepositoryTooLargeError, CloneFailedError) as e:
            logger.info(f"Falling back to the API view of {reference.identity}: {e}")
            return await self.degraded_view(reference.identity, reason=f"{e}.")

        return await asyncio.to_thread(render_local_view, clone, reference)

    async def degraded_view(self, identity: RepositoryIdentity, reason: str) -> RepositoryView:
        if self.metadata_client is None:
            msg = f"Could not read repository {identity}: {reason}"
            raise RepositoryError(msg)

        metadata, readme = await asyncio.gather(self.metadata_client.get_metadata(identity), self.metadata_client.get_readme(identity))

        if metadata is None and readme is None:
            msg = f"Could not read repository {identity}: {reason}"
            raise RepositoryError(msg)

        sections = [f"_{reason} Showing repository metadata from the GitHub API instead of a local clone._"]

        if metadata is not None:
            details = [f"- Repository: {metadata.full_name}"]
            if metadata.description:
                details.append(f"- Description: {metadata.description}")
            if metadata.language:
                details.append(f"- Language: {metadata.language}")
            if metadata.default_branch:
                details.append(f"- Default branch: {metadata.default_branch}")
            details.append(f"- Stars: {metadata.stars}")
            details.append(f"- Size: {metadata.size_kb / 1024:.1f}MB")
            sections.append("\n".join(details))

        if readme:
            sections.append(readme)

        return RepositoryView(title=str(identity), content="\n\n".join(sections))
