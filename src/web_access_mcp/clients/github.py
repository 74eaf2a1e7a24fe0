import base64
import binascii
from typing import TYPE_CHECKING, Any

import httpx
from async_lru import alru_cache
from githubkit.exception import GitHubException, RequestFailed
from githubkit.github import GitHub
from pydantic import BaseModel

from web_access_mcp.repositories.identity import RepositoryIdentity
from web_access_mcp.utils.logging import BASE_LOGGER

if TYPE_CHECKING:
    from githubkit.response import Response
    from githubkit.versions.v2022_11_28.models import ContentFile, FullRepository
    from githubkit.versions.v2022_11_28.types import ContentFileType, FullRepositoryType

logger = BASE_LOGGER.getChild("github")

ONE_HOUR_IN_SECONDS = 60 * 60


def get_github_client(token: str | None = None) -> GitHub[Any]:
    if token:
        return GitHub(token)

    return GitHub()


class RepositoryMetadata(BaseModel):
    full_name: str
    description: str | None = None
    default_branch: str | None = None
    language: str | None = None
    stars: int = 0
    size_kb: int = 0
    html_url: str | None = None

    @classmethod
    def from_full_repository(cls, full_repository: "FullRepository") -> "RepositoryMetadata":
        return cls(
            full_name=full_repository.full_name,
            description=full_repository.description,
            default_branch=full_repository.default_branch,
            language=full_repository.language,
            stars=full_repository.stargazers_count,
            size_kb=full_repository.size,
            html_url=full_repository.html_url,
        )


class RepositoryMetadataClient:
    """Lightweight repository lookups against the GitHub REST API."""

    github_client: GitHub[Any]

    def __init__(self, github_client: GitHub[Any]):
        self.github_client = github_client

    @alru_cache(maxsize=100, ttl=ONE_HOUR_IN_SECONDS)
    async def get_metadata(self, identity: RepositoryIdentity) -> RepositoryMetadata | None:
        try:
            response: Response[FullRepository, FullRepositoryType] = await self.github_client.rest.repos.async_get(
                owner=identity.owner, repo=identity.name
            )
        except GitHubException as github_exception:
            self._log_request_errors(action=f"Get repository {identity}", github_exception=github_exception)
            return None

        return RepositoryMetadata.from_full_repository(full_repository=response.parsed_data)

    async def get_size_kb(self, identity: RepositoryIdentity) -> int | None:
        """The repository size as reported by GitHub, in KB. None when it cannot be looked up."""

        if metadata := await self.get_metadata(identity):
            return metadata.size_kb

        return None

    async def get_readme(self, identity: RepositoryIdentity) -> str | None:
        try:
            response: Response[ContentFile, ContentFileType] = await self.github_client.rest.repos.async_get_readme(
                owner=identity.owner, repo=identity.name
            )
        except GitHubException as github_exception:
            self._log_request_errors(action=f"Get readme of {identity}", github_exception=github_exception)
            return None

        content_file = response.parsed_data

        if content_file.encoding != "base64":
            return content_file.content

        try:
            return base64.b64decode(content_file.content).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            logger.warning(f"Could not decode the readme of {identity}")
            return None

    def _log_request_errors(self, action: str, github_exception: GitHubException) -> None:
        if isinstance(github_exception, RequestFailed) and github_exception.response.status_code == httpx.codes.NOT_FOUND:
            logger.warning(f"{action}: Not found error for {github_exception.request.url}")
        else:
            logger.error(f"{action}: Unknown error: {github_exception}")
