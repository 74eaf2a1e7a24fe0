import asyncio
from collections.abc import Sequence
from urllib.parse import urlparse

from aiohttp import ClientError

from web_access_mcp.clients.convert.base import BaseConvertClient
from web_access_mcp.clients.convert.markdown import MarkdownConvertClient
from web_access_mcp.clients.fetch.base import BaseFetchClient, FetchedResource
from web_access_mcp.clients.fetch.simple import SimpleFetchClient
from web_access_mcp.config import FetchConfig
from web_access_mcp.errors import ExtractionUnsupportedError, RepositoryError
from web_access_mcp.extraction.article import extract_article, page_title
from web_access_mcp.extraction.flight import extract_flight_text
from web_access_mcp.extraction.repository import RepositoryViewer
from web_access_mcp.models.content import ExtractedContent, truncate_content
from web_access_mcp.repositories.identity import parse_repository_url
from web_access_mcp.utils.activity import ActivityKind, ActivityMonitor
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("pipeline")

INVALID_URL = "Invalid URL"
NO_READABLE_CONTENT = "Could not extract readable content"

HTML_CONTENT_TYPES = {"text/html", "application/xhtml+xml"}
TEXT_CONTENT_TYPES = {"application/json", "application/xml", "application/javascript", "application/x-yaml", "application/yaml"}

REPOSITORY_STATUS = 200


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    return parsed.scheme in {"http", "https"} and bool(parsed.netloc) and bool(parsed.hostname)


def is_text_content_type(content_type: str) -> bool:
    return (content_type.startswith("text/") and content_type not in HTML_CONTENT_TYPES) or content_type in TEXT_CONTENT_TYPES


class ContentExtractor:
    """Fetches URLs and turns them into truncated, agent-readable markdown."""

    def __init__(
        self,
        activity: ActivityMonitor,
        config: FetchConfig | None = None,
        fetch_client: BaseFetchClient | None = None,
        convert_client: BaseConvertClient | None = None,
        repository_viewer: RepositoryViewer | None = None,
    ):
        self.activity = activity
        self.config = config or FetchConfig()
        self.fetch_client = fetch_client or SimpleFetchClient()
        self.convert_client = convert_client or MarkdownConvertClient()
        self.repository_viewer = repository_viewer

        self._semaphore = asyncio.Semaphore(self.config.concurrency)

    async def extract(self, url: str, timeout: float | None = None) -> ExtractedContent:
        """Extract the readable content of a single URL.

        Failures are returned as an `ExtractedContent` with `error` set. Cancellation propagates to
        the caller after being recorded.
        """

        if not is_valid_url(url):
            return ExtractedContent.failure(url, INVALID_URL)

        activity_id = self.activity.log_start(ActivityKind.FETCH, url)

        try:
            status, extracted = await self._extract(url, timeout=timeout or self.config.timeout_seconds)
        except asyncio.CancelledError:
            self.activity.log_complete(activity_id, status=0)
            raise
        except TimeoutError:
            message = f"Timed out after {timeout or self.config.timeout_seconds}s"
            self.activity.log_error(activity_id, message)
            return ExtractedContent.failure(url, message)
        except (ClientError, RepositoryError, OSError) as e:
            message = str(e) or type(e).__name__
            self.activity.log_error(activity_id, message)
            return ExtractedContent.failure(url, message)

        self.activity.log_complete(activity_id, status=status)

        return extracted

    async def extract_all(self, urls: Sequence[str], timeout: float | None = None) -> list[ExtractedContent]:
        """Extract many URLs with bounded concurrency. Results are in the order of `urls`."""

        async def limited(url: str) -> ExtractedContent:
            async with self._semaphore:
                return await self.extract(url, timeout=timeout)

        return list(await asyncio.gather(*(limited(url) for url in urls)))

    async def _extract(self, url: str, timeout: float) -> tuple[int, ExtractedContent]:
        if self.repository_viewer is not None and (reference := parse_repository_url(url)):
            view = await self.repository_viewer.view(reference)
            return REPOSITORY_STATUS, self._content(url, title=view.title, content=view.content)

        async with asyncio.timeout(timeout):
            resource = await self.fetch_client.fetch(url, timeout=timeout)

            if not resource.ok:
                return resource.status, ExtractedContent.failure(url, f"HTTP {resource.status}: {resource.reason}")

            try:
                title, content = await self._convert(resource)
            except ExtractionUnsupportedError as e:
                return resource.status, ExtractedContent.failure(url, str(e))

        return resource.status, self._content(url, title=title, content=content)

    async def _convert(self, resource: FetchedResource) -> tuple[str, str]:
        content_type = resource.content_type.lower()

        if is_text_content_type(content_type):
            if not resource.text.strip():
                raise ExtractionUnsupportedError(NO_READABLE_CONTENT)
            return "", resource.text

        if content_type not in HTML_CONTENT_TYPES:
            msg = f"Unsupported content type: {resource.content_type}"
            raise ExtractionUnsupportedError(msg)

        if article := extract_article(resource.text):
            if markdown := await self.convert_client.convert(article.html):
                return article.title, markdown

        if flight := extract_flight_text(resource.text):
            logger.debug(f"Using Next.js hydration data for {resource.url}")
            return page_title(resource.text), flight

        raise ExtractionUnsupportedError(NO_READABLE_CONTENT)

    def _content(self, url: str, title: str, content: str) -> ExtractedContent:
        return ExtractedContent(url=url, title=title, content=truncate_content(content, self.config.max_content_length))
