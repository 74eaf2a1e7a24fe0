from typing import Any, override

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, ValidationError

from web_access_mcp.clients.search.base import BaseSearchClient, ProviderResult, classify_status
from web_access_mcp.clients.search.domains import validate_domain_filter
from web_access_mcp.errors import FailureClass, ProviderError
from web_access_mcp.models.search import SearchQuery, SearchResponse, SearchResult
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("perplexity_api")

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"
PERPLEXITY_MODEL = "sonar"
MAX_TOKENS = 1024
DEFAULT_TIMEOUT_SECONDS = 60


class PerplexityMessage(BaseModel):
    content: str | None = None


class PerplexityChoice(BaseModel):
    message: PerplexityMessage | None = None


class PerplexityApiResponse(BaseModel):
    choices: list[PerplexityChoice] = []
    citations: list[Any] = []

    @property
    def answer(self) -> str:
        if self.choices and self.choices[0].message:
            return self.choices[0].message.content or ""

        return ""

    def to_search_response(self, num_results: int) -> SearchResponse:
        results: list[SearchResult] = []
        seen: set[str] = set()

        for citation in self.citations:
            if len(results) >= num_results:
                break

            if isinstance(citation, str):
                url, title = citation, None
            elif isinstance(citation, dict) and isinstance(citation.get("url"), str):
                url, title = citation["url"], citation.get("title")
            else:
                continue

            if url in seen:
                continue

            seen.add(url)
            results.append(SearchResult(title=title or f"Source {len(results) + 1}", url=url, snippet=""))

        return SearchResponse(answer=self.answer, results=results)


class PerplexityApiClient(BaseSearchClient):
    session: ClientSession | None

    def __init__(self, api_key: str, session: ClientSession | None = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        if not api_key:
            msg = "A Perplexity API key is required"
            raise ValueError(msg)

        self.api_key = api_key
        self.session = session
        self.timeout = timeout

    def build_request_body(self, query: SearchQuery) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": PERPLEXITY_MODEL,
            "messages": [{"role": "user", "content": query.text}],
            "max_tokens": MAX_TOKENS,
            "return_related_questions": False,
        }

        if query.recency:
            body["search_recency_filter"] = query.recency.value

        if validated := validate_domain_filter(query.domain_filter):
            body["search_domain_filter"] = validated

        return body

    async def perplexity_search(self, query: SearchQuery) -> ProviderResult:
        """Query the Perplexity API.

        Raises:
            ProviderError: classified as transport, auth_rejected or malformed_response.
        """

        if self.session is None:
            self.session = ClientSession()

        try:
            async with self.session.post(
                url=PERPLEXITY_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=self.build_request_body(query),
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                if not response.ok:
                    error_text = await response.text()
                    msg = f"Perplexity API error {response.status}: {error_text[:400]}"
                    raise ProviderError(msg, classify_status(response.status), status=response.status)

                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    msg = "Perplexity API returned invalid JSON"
                    raise ProviderError(msg, FailureClass.MALFORMED_RESPONSE, status=response.status) from e

                status = response.status
        except (ClientError, TimeoutError) as e:
            msg = f"Perplexity API request failed: {e or type(e).__name__}"
            raise ProviderError(msg, FailureClass.TRANSPORT) from e

        try:
            parsed = PerplexityApiResponse.model_validate(payload)
        except ValidationError as e:
            msg = "Perplexity API returned an unexpected response shape"
            raise ProviderError(msg, FailureClass.MALFORMED_RESPONSE, status=status) from e

        search_response = parsed.to_search_response(num_results=query.num_results)

        logger.info(f"Perplexity API answered with {len(search_response.results)} citations")

        return ProviderResult(status=status, response=search_response)

    @override
    async def search(self, query: SearchQuery) -> SearchResponse:
        result = await self.perplexity_search(query)
        return result.response
