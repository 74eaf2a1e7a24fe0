import os
import re
import uuid
from http import HTTPStatus
from typing import Any, ClassVar, override

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, ConfigDict

from web_access_mcp.clients.cookies.chrome import CookieJar
from web_access_mcp.clients.search.base import BaseSearchClient, ProviderResult, classify_status
from web_access_mcp.clients.search.domains import apply_domain_filter_hints
from web_access_mcp.clients.search.events import reconstruct
from web_access_mcp.errors import FailureClass, ProviderError
from web_access_mcp.models.search import SearchQuery, SearchResponse
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("perplexity_web")

PERPLEXITY_WEB_URL = "https://www.perplexity.ai/rest/sse/perplexity_ask"
PERPLEXITY_ORIGINS = ["https://www.perplexity.ai", "https://perplexity.ai"]
PERPLEXITY_SESSION_COOKIES = ["__Secure-next-auth.session-token", "next-auth.session-token"]
PERPLEXITY_COOKIE_NAMES = [
    *PERPLEXITY_SESSION_COOKIES,
    "__Secure-next-auth.callback-url",
    "__Host-next-auth.csrf-token",
    "next-auth.csrf-token",
    "pplx.visitor-id",
    "pplx.session-id",
    "__cf_bm",
    "cf_clearance",
]

PERPLEXITY_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/145.0.0.0 Safari/537.36"
)

SUPPORTED_BLOCK_USE_CASES = [
    "answer_modes",
    "media_items",
    "knowledge_cards",
    "inline_entity_cards",
    "place_widgets",
    "finance_widgets",
    "sports_widgets",
    "shopping_widgets",
    "jobs_widgets",
    "search_result_widgets",
    "clarification_responses",
    "inline_images",
    "inline_assets",
    "inline_finance_widgets",
    "placeholder_cards",
    "diff_blocks",
    "inline_knowledge_cards",
    "entity_group_v2",
    "refinement_filters",
    "canvas_mode",
]

CHALLENGE_SIGNATURE = re.compile(r"just a moment|cloudflare|cf-chl|cf-browser-verification", re.IGNORECASE)

DEFAULT_TIMEOUT_SECONDS = 90


def has_session_cookie(cookies: CookieJar) -> bool:
    return any(cookies.get(name) for name in PERPLEXITY_SESSION_COOKIES)


def build_cookie_header(cookies: CookieJar) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items() if value)


def is_challenge_block(status: int, body: str) -> bool:
    """Whether a response is a bot challenge page rather than an ordinary error."""
    return status == HTTPStatus.FORBIDDEN and CHALLENGE_SIGNATURE.search(body) is not None


class WebRequest(BaseModel):
    """A fully built session request that can be replayed through another transport."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    url: str
    headers: dict[str, str]
    payload: dict[str, Any]
    num_results: int


class PerplexityWebClient(BaseSearchClient):
    """Searches through the Perplexity web app's streaming endpoint using a browser session."""

    session: ClientSession | None

    def __init__(self, cookies: CookieJar | None = None, session: ClientSession | None = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.cookies = cookies or {}
        self.session = session
        self.timeout = timeout

    def build_request(self, query: SearchQuery, cookies: CookieJar | None = None) -> WebRequest:
        effective_query = apply_domain_filter_hints(query.text, query.domain_filter)

        payload = {
            "params": {
                "attachments": [],
                "language": "en-US",
                "timezone": os.getenv("TZ") or "UTC",
                "search_focus": "internet",
                "sources": ["web"],
                "search_recency_filter": query.recency.value if query.recency else None,
                "frontend_uuid": str(uuid.uuid4()),
                "frontend_context_uuid": str(uuid.uuid4()),
                "visitor_id": str(uuid.uuid4()),
                "mode": "concise",
                "model_preference": "pplx_pro",
                "is_related_query": False,
                "is_sponsored": False,
                "prompt_source": "user",
                "query_source": "home",
                "is_incognito": False,
                "time_from_first_type": 0,
                "local_search_enabled": False,
                "use_schematized_api": True,
                "send_back_text_in_streaming_api": False,
                "supported_block_use_cases": SUPPORTED_BLOCK_USE_CASES,
                "client_coordinates": None,
                "mentions": [],
                "dsl_query": effective_query,
                "skip_search_enabled": False,
                "is_nav_suggestions_disabled": False,
                "always_search_override": False,
                "override_no_search": False,
                "comet_max_assistant_enabled": False,
                "version": "2.18",
            },
            "query_str": effective_query,
        }

        headers = {
            "accept": "text/event-stream",
            "accept-language": "en-US,en;q=0.9",
            "cache-control": "no-cache",
            "content-type": "application/json",
            "origin": "https://www.perplexity.ai",
            "referer": "https://www.perplexity.ai/",
            "user-agent": PERPLEXITY_USER_AGENT,
            "x-perplexity-request-reason": "perplexity-query-state-provider",
            "x-request-id": str(uuid.uuid4()),
            "cookie": build_cookie_header(cookies if cookies is not None else self.cookies),
        }

        return WebRequest(url=PERPLEXITY_WEB_URL, headers=headers, payload=payload, num_results=query.num_results)

    async def send(self, request: WebRequest) -> tuple[int, str]:
        """Send a session request and return the status and raw event stream.

        Raises:
            ProviderError: active_defense when a challenge page comes back, otherwise classified by status.
        """

        if self.session is None:
            self.session = ClientSession()

        try:
            async with self.session.post(
                url=request.url,
                headers=request.headers,
                json=request.payload,
                timeout=ClientTimeout(total=self.timeout),
            ) as response:
                body = await response.text()
                status = response.status
        except (ClientError, TimeoutError) as e:
            msg = f"Perplexity web request failed: {e or type(e).__name__}"
            raise ProviderError(msg, FailureClass.TRANSPORT) from e

        if HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            return status, body

        if is_challenge_block(status, body):
            msg = (
                "Perplexity web blocked by Cloudflare (403). Open perplexity.ai in Chrome, "
                "complete any verification page, then retry. If this keeps happening, set PERPLEXITY_API_KEY."
            )
            raise ProviderError(msg, FailureClass.ACTIVE_DEFENSE, status=status)

        msg = f"Perplexity web error {status}: {body[:400]}"
        raise ProviderError(msg, classify_status(status), status=status)

    def parse(self, status: int, body: str, num_results: int) -> ProviderResult:
        response = reconstruct(body, max_results=num_results)

        if response.is_empty:
            msg = "Perplexity web returned an empty response"
            raise ProviderError(msg, FailureClass.MALFORMED_RESPONSE, status=status)

        logger.info(f"Perplexity web answered with {len(response.results)} sources")

        return ProviderResult(status=status, response=response)

    @override
    async def search(self, query: SearchQuery) -> SearchResponse:
        request = self.build_request(query)
        status, body = await self.send(request)
        return self.parse(status, body, num_results=request.num_results).response
