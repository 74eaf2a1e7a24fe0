from typing import override

from aiohttp import ClientSession, ClientTimeout

from web_access_mcp.clients.fetch.base import BaseFetchClient, FetchedResource

FETCH_USER_AGENT = "Mozilla/5.0 (compatible; web-access-mcp/1.0)"
FETCH_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,text/plain;q=0.8,*/*;q=0.5"


class SimpleFetchClient(BaseFetchClient):
    session: ClientSession | None

    def __init__(self, session: ClientSession | None = None):
        self.session = session

    @override
    async def fetch(self, url: str, timeout: float) -> FetchedResource:
        """Fetch a URL without raising for error statuses. Network failures propagate as `aiohttp` errors."""

        if self.session is None:
            self.session = ClientSession()

        async with self.session.get(
            url,
            headers={"User-Agent": FETCH_USER_AGENT, "Accept": FETCH_ACCEPT},
            timeout=ClientTimeout(total=timeout),
        ) as response:
            return FetchedResource(
                url=str(response.url),
                status=response.status,
                reason=response.reason or "",
                content_type=response.content_type,
                text=await response.text(errors="replace") if response.ok else "",
            )
