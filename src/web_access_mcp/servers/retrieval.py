from typing import Annotated, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from web_access_mcp.clients.search.cascade import CascadeSearchClient
from web_access_mcp.errors import FailureClass, WebAccessError
from web_access_mcp.extraction.pipeline import ContentExtractor
from web_access_mcp.models.content import ExtractedContent
from web_access_mcp.models.search import DEFAULT_NUM_RESULTS, MAX_NUM_RESULTS, RecencyFilter, SearchQuery, SearchResult
from web_access_mcp.utils.activity import ActivityEntry, ActivityMonitor
from web_access_mcp.utils.logging import BASE_LOGGER
from web_access_mcp.utils.rate_limit import RateLimitStatus

logger = BASE_LOGGER.getChild("retrieval")

QUERY = Annotated[str, Field(description="The question or search query.", min_length=1)]
NUM_RESULTS = Annotated[int, Field(description="The maximum number of sources to return.", ge=1, le=MAX_NUM_RESULTS)]
RECENCY = Annotated[RecencyFilter | None, Field(description="Only use sources published within this window.")]
DOMAIN_FILTER = Annotated[
    list[str] | None,
    Field(description="Domains to restrict sources to, e.g. `docs.python.org`. Prefix a domain with `-` to exclude it instead."),
]
URLS = Annotated[list[str], Field(description="The URLs to fetch. GitHub repository URLs are read from a local clone.", min_length=1)]


class SearchOutcome(BaseModel):
    """A search answer, or the reason no answer could be produced."""

    answer: str = ""
    results: list[SearchResult] = Field(default_factory=list)
    error: str | None = None
    failure_class: FailureClass | None = None


class ActivityReport(BaseModel):
    entries: list[ActivityEntry]
    rate_limit: RateLimitStatus | None = None


class RetrievalServer(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    search_client: CascadeSearchClient
    extractor: ContentExtractor
    activity: ActivityMonitor

    async def search(
        self,
        query: QUERY,
        num_results: NUM_RESULTS = DEFAULT_NUM_RESULTS,
        recency: RECENCY = None,
        domain_filter: DOMAIN_FILTER = None,
    ) -> SearchOutcome:
        """Search the web with Perplexity and return a sourced answer."""

        search_query = SearchQuery(text=query, num_results=num_results, recency=recency, domain_filter=tuple(domain_filter or ()))

        try:
            response = await self.search_client.search(search_query)
        except WebAccessError as e:
            logger.warning(f"Search for {query!r} failed: {e}")
            return SearchOutcome(error=str(e), failure_class=e.failure_class)

        return SearchOutcome(answer=response.answer, results=response.results)

    async def fetch(self, urls: URLS) -> list[ExtractedContent]:
        """Fetch the given URLs and return their readable content as markdown, one result per URL in order."""
        return await self.extractor.extract_all(urls)

    def recent_activity(self) -> ActivityReport:
        """List recent searches and fetches along with the current search rate limit usage."""
        return ActivityReport(entries=self.activity.entries, rate_limit=self.activity.rate_limit)
