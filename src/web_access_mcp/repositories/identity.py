import re
from enum import StrEnum
from pathlib import PurePosixPath
from typing import ClassVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

GITHUB_HOST = "github.com"
GITHUB_HOSTS = {GITHUB_HOST, "www.github.com"}

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

# First path segments on github.com that are site pages rather than owners.
RESERVED_OWNERS = {
    "about",
    "apps",
    "collections",
    "enterprise",
    "explore",
    "features",
    "login",
    "marketplace",
    "new",
    "notifications",
    "orgs",
    "organizations",
    "pricing",
    "pulls",
    "issues",
    "search",
    "settings",
    "sponsors",
    "topics",
    "trending",
}


class RepositoryIdentity(BaseModel):
    """Identifies a hosted repository independently of any branch or path inside it."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    host: str
    owner: str
    name: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def clone_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.name}.git"

    @property
    def relative_path(self) -> PurePosixPath:
        return PurePosixPath(self.host, self.owner, self.name)


class ReferenceKind(StrEnum):
    ROOT = "root"
    TREE = "tree"
    BLOB = "blob"


class RepositoryReference(BaseModel):
    """A repository URL: the repository plus the ref and path it points at, if any."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    identity: RepositoryIdentity
    kind: ReferenceKind = ReferenceKind.ROOT
    ref: str | None = None
    path: str = ""


def _valid_name(value: str) -> bool:
    return bool(NAME_PATTERN.match(value)) and value not in {".", ".."}


def parse_repository_url(url: str) -> RepositoryReference | None:
    """Parse a GitHub repository URL such as `https://github.com/owner/repo/blob/main/src/app.py`.

    Returns None for anything that is not the root, a tree, or a blob of a repository.
    """

    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or (parsed.hostname or "").lower() not in GITHUB_HOSTS:
        return None

    segments = [segment for segment in parsed.path.split("/") if segment]
    if len(segments) < 2:  # noqa: PLR2004
        return None

    owner, name, *rest = segments
    name = name.removesuffix(".git")

    if owner.lower() in RESERVED_OWNERS or not _valid_name(owner) or not _valid_name(name):
        return None

    identity = RepositoryIdentity(host=GITHUB_HOST, owner=owner, name=name)

    if not rest:
        return RepositoryReference(identity=identity)

    kind, *location = rest
    if kind not in {ReferenceKind.TREE, ReferenceKind.BLOB} or not location:
        return None

    ref, *path = location

    return RepositoryReference(identity=identity, kind=ReferenceKind(kind), ref=ref, path="/".join(path))
