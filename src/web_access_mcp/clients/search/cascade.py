"""Search through an ordered cascade of Perplexity transports.

Each search is admitted by the rate limit window and then tries, at most once each:

1. the API, when a key is configured
2. the web app's streaming endpoint, when the local Chrome profile holds a session cookie
3. the same web request replayed through the isolated transport, only when stage 2 was blocked by a bot challenge
"""

import asyncio
from pathlib import Path
from typing import override

from web_access_mcp.clients.cookies.chrome import ChromeCookieReader
from web_access_mcp.clients.search.base import BaseSearchClient, ProviderResult
from web_access_mcp.clients.search.isolated import IsolatedTransport
from web_access_mcp.clients.search.perplexity_api import PerplexityApiClient
from web_access_mcp.clients.search.perplexity_web import (
    PERPLEXITY_COOKIE_NAMES,
    PERPLEXITY_ORIGINS,
    PerplexityWebClient,
    has_session_cookie,
)
from web_access_mcp.config import DEFAULT_CONFIG_PATH
from web_access_mcp.errors import AllProvidersFailedError, AuthUnavailableError, FailureClass, ProviderError, StageFailure, WebAccessError
from web_access_mcp.models.search import SearchQuery, SearchResponse
from web_access_mcp.utils.activity import ActivityKind, ActivityMonitor
from web_access_mcp.utils.logging import BASE_LOGGER
from web_access_mcp.utils.rate_limit import RateLimitWindow

logger = BASE_LOGGER.getChild("cascade")

API_STAGE = "api"
SESSION_STAGE = "session"
ISOLATED_STAGE = "isolated"

NO_SESSION_COOKIE_WARNING = "Perplexity Chrome cookies found, but no active Perplexity session cookie is available."


class CascadeSearchClient(BaseSearchClient):
    api_client: PerplexityApiClient | None
    cookie_reader: ChromeCookieReader | None
    isolated_transport: IsolatedTransport | None

    def __init__(
        self,
        web_client: PerplexityWebClient,
        rate_limit: RateLimitWindow,
        activity: ActivityMonitor,
        api_client: PerplexityApiClient | None = None,
        cookie_reader: ChromeCookieReader | None = None,
        isolated_transport: IsolatedTransport | None = None,
        config_path: Path = DEFAULT_CONFIG_PATH,
    ):
        self.web_client = web_client
        self.rate_limit = rate_limit
        self.activity = activity
        self.api_client = api_client
        self.cookie_reader = cookie_reader
        self.isolated_transport = isolated_transport
        self.config_path = config_path

    def is_available(self) -> bool:
        """Whether any credential path exists. A cookie store may still turn out to hold no session."""
        return self.api_client is not None or (self.cookie_reader is not None and self.cookie_reader.is_available())

    @override
    async def search(self, query: SearchQuery) -> SearchResponse:
        """Search with the first stage that succeeds.

        Raises:
            RateLimitedError: The rate limit window is saturated. Nothing is sent.
            AuthUnavailableError: No credential of any kind was available, so no stage was attempted.
            AllProvidersFailedError: Every attempted stage failed with a class that falls through.
            ProviderError: A stage failed with a terminal class such as a malformed response.
        """

        self.activity.update_rate_limit(self.rate_limit.admit())

        activity_id = self.activity.log_start(ActivityKind.SEARCH, query.text)

        try:
            result = await self._run_stages(query)
        except asyncio.CancelledError:
            self.activity.log_complete(activity_id, status=0)
            raise
        except WebAccessError as e:
            self.activity.log_error(activity_id, str(e))
            raise

        self.activity.log_complete(activity_id, status=result.status)

        return result.response

    async def _run_stages(self, query: SearchQuery) -> ProviderResult:
        failures: list[StageFailure] = []

        if self.api_client is not None:
            try:
                return await self.api_client.perplexity_search(query)
            except ProviderError as e:
                self._record(failures, API_STAGE, e)

        cookies, warnings = await self._read_session_cookies()

        if cookies is None:
            if not failures:
                raise AuthUnavailableError(config_path=self.config_path, warnings=warnings)

            raise AllProvidersFailedError(failures, notes=warnings)

        request = self.web_client.build_request(query, cookies=cookies)

        try:
            status, body = await self.web_client.send(request)
        except ProviderError as e:
            if e.failure_class is not FailureClass.ACTIVE_DEFENSE or self.isolated_transport is None:
                self._record(failures, SESSION_STAGE, e)
                raise AllProvidersFailedError(failures, notes=warnings) from e

            failures.append(StageFailure(stage=SESSION_STAGE, failure_class=e.failure_class, message=e.msg))
            logger.warning("Perplexity web blocked by a bot challenge, retrying through the isolated transport")

            try:
                status, body = await self.isolated_transport.send(request)
            except ProviderError as isolated_error:
                self._record(failures, ISOLATED_STAGE, isolated_error)
                raise AllProvidersFailedError(failures, notes=warnings) from isolated_error

        return self.web_client.parse(status, body, num_results=request.num_results)

    async def _read_session_cookies(self) -> tuple[dict[str, str] | None, list[str]]:
        """Read the Perplexity cookies for this request. Returns None when no session cookie is usable."""

        if self.cookie_reader is None:
            return None, []

        lookup = await self.cookie_reader.read_auth_cookies(PERPLEXITY_ORIGINS, PERPLEXITY_COOKIE_NAMES)
        if lookup is None:
            return None, []

        if not has_session_cookie(lookup.cookies):
            if lookup.cookies:
                return None, [*lookup.warnings, NO_SESSION_COOKIE_WARNING]

            return None, lookup.warnings

        return lookup.cookies, lookup.warnings

    @staticmethod
    def _record(failures: list[StageFailure], stage: str, error: ProviderError) -> None:
        """Record a stage failure, or re-raise it if its class ends the cascade. A bot challenge that
        could not be bypassed is recorded like any other provider refusal."""

        if not error.failure_class.falls_through and error.failure_class is not FailureClass.ACTIVE_DEFENSE:
            raise error

        logger.warning(f"Search stage {stage} failed ({error.failure_class}): {error.msg}")

        failures.append(StageFailure(stage=stage, failure_class=error.failure_class, message=error.msg))
