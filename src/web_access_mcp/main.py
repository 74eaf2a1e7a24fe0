import asyncio
from typing import Literal

import asyncclick as click
from aiohttp import ClientSession
from fastmcp import FastMCP
from fastmcp.server.middleware.logging import LoggingMiddleware
from fastmcp.tools import FunctionTool

from web_access_mcp.clients.cookies.chrome import ChromeCookieReader
from web_access_mcp.clients.fetch.simple import SimpleFetchClient
from web_access_mcp.clients.github import RepositoryMetadataClient, get_github_client
from web_access_mcp.clients.search.cascade import CascadeSearchClient
from web_access_mcp.clients.search.isolated import IsolatedTransport
from web_access_mcp.clients.search.perplexity_api import PerplexityApiClient
from web_access_mcp.clients.search.perplexity_web import PerplexityWebClient
from web_access_mcp.config import WebAccessConfig, load_config
from web_access_mcp.extraction.pipeline import ContentExtractor
from web_access_mcp.extraction.repository import RepositoryViewer
from web_access_mcp.repositories.clone_cache import CloneCache, SessionEvent
from web_access_mcp.repositories.cloner import GitCloner
from web_access_mcp.servers.retrieval import RetrievalServer
from web_access_mcp.utils.activity import ActivityMonitor
from web_access_mcp.utils.logging import BASE_LOGGER, setup_logging
from web_access_mcp.utils.rate_limit import RateLimitWindow

logger = BASE_LOGGER.getChild("main")


def build_server(config: WebAccessConfig, session: ClientSession) -> tuple[RetrievalServer, CloneCache]:
    """Wire the retrieval engine together. Every piece of shared state is created here exactly once."""

    activity = ActivityMonitor()

    search_client = CascadeSearchClient(
        web_client=PerplexityWebClient(session=session),
        rate_limit=RateLimitWindow(
            max_requests=config.search.rate_limit_requests,
            window_seconds=config.search.rate_limit_window_seconds,
        ),
        activity=activity,
        api_client=PerplexityApiClient(api_key=config.perplexity_api_key, session=session) if config.perplexity_api_key else None,
        cookie_reader=ChromeCookieReader() if config.browser_cookies else None,
        isolated_transport=IsolatedTransport(runtime_dir=config.search.isolated_runtime_dir),
        config_path=config.config_path,
    )

    metadata_client = RepositoryMetadataClient(github_client=get_github_client(config.github_token))

    clone_cache = CloneCache(
        directory=config.clone.directory,
        cloner=GitCloner(timeout=config.clone.timeout_seconds),
        metadata_client=metadata_client,
    )

    extractor = ContentExtractor(
        activity=activity,
        config=config.fetch,
        fetch_client=SimpleFetchClient(session=session),
        repository_viewer=RepositoryViewer(clone_config=config.clone, clone_cache=clone_cache, metadata_client=metadata_client),
    )

    return RetrievalServer(search_client=search_client, extractor=extractor, activity=activity), clone_cache


@click.command()
@click.option(
    "--mcp-transport", type=click.Choice(["stdio", "streamable-http"]), default="stdio", help="The transport to run the MCP server on"
)
@click.option(
    "--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), default="INFO", help="The level to log at", envvar="LOG_LEVEL"
)
async def cli(mcp_transport: Literal["stdio", "streamable-http"], log_level: str):
    setup_logging(level=log_level)

    config = load_config()

    async with ClientSession() as session:
        retrieval_server, clone_cache = build_server(config=config, session=session)

        if not retrieval_server.search_client.is_available():
            logger.warning("No Perplexity API key or Chrome profile found, searches will fail until one is configured")

        mcp = FastMCP[None](name="Web Access MCP")

        mcp.add_tool(tool=FunctionTool.from_function(fn=retrieval_server.search, name="web_search"))
        mcp.add_tool(tool=FunctionTool.from_function(fn=retrieval_server.fetch, name="fetch_content"))
        mcp.add_tool(tool=FunctionTool.from_function(fn=retrieval_server.recent_activity, name="recent_activity"))

        mcp.add_middleware(middleware=LoggingMiddleware())

        try:
            await mcp.run_async(transport=mcp_transport)
        finally:
            await clone_cache.invalidate(SessionEvent.SHUTDOWN)


def run_mcp():
    asyncio.run(cli())


if __name__ == "__main__":
    run_mcp()
