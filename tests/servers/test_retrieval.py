from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from aiohttp import ClientSession
from aioresponses import aioresponses
from fastmcp import FastMCP
from fastmcp.client import Client
from fastmcp.client.transports import FastMCPTransport
from fastmcp.exceptions import ToolError
from fastmcp.tools import Tool

from web_access_mcp.clients.search.perplexity_api import PERPLEXITY_API_URL
from web_access_mcp.config import CloneConfig, WebAccessConfig
from web_access_mcp.errors import FailureClass
from web_access_mcp.main import build_server
from web_access_mcp.repositories.clone_cache import CloneCache
from web_access_mcp.servers.retrieval import RetrievalServer

API_PAYLOAD = {
    "choices": [{"message": {"content": "Use tokio or async-std."}}],
    "citations": ["https://tokio.rs/", "https://async.rs/", "https://rust-lang.github.io/async-book/"],
}


@pytest.fixture
async def session() -> AsyncGenerator[ClientSession, None]:
    async with ClientSession() as session:
        yield session


def config(tmp_path: Path, **overrides: object) -> WebAccessConfig:
    return WebAccessConfig.model_validate(
        {
            "browser_cookies": False,
            "clone": CloneConfig(enabled=False, directory=tmp_path / "repos"),
            "config_path": tmp_path / "config.json",
            **overrides,
        }
    )


@pytest.fixture
def retrieval_server(tmp_path: Path, session: ClientSession) -> RetrievalServer:
    server, _ = build_server(config=config(tmp_path, perplexity_api_key="test-key"), session=session)
    return server


@pytest.fixture
def fastmcp(retrieval_server: RetrievalServer) -> FastMCP[None]:
    fastmcp = FastMCP[None](name="Web Access MCP")
    fastmcp.add_tool(tool=Tool.from_function(fn=retrieval_server.search, name="web_search"))
    fastmcp.add_tool(tool=Tool.from_function(fn=retrieval_server.fetch, name="fetch_content"))
    fastmcp.add_tool(tool=Tool.from_function(fn=retrieval_server.recent_activity, name="recent_activity"))
    return fastmcp


def test_build_server(tmp_path: Path, session: ClientSession):
    server, clone_cache = build_server(config=config(tmp_path), session=session)

    assert isinstance(clone_cache, CloneCache)
    assert clone_cache.directory == tmp_path / "repos"
    assert server.search_client.api_client is None
    assert server.search_client.cookie_reader is None
    assert not server.search_client.is_available()
    assert server.extractor.activity is server.activity
    assert server.search_client.activity is server.activity


async def test_search(retrieval_server: RetrievalServer):
    with aioresponses() as mocked:
        mocked.post(PERPLEXITY_API_URL, payload=API_PAYLOAD)

        outcome = await retrieval_server.search("rust async programming", num_results=2)

    assert outcome.error is None
    assert outcome.answer == "Use tokio or async-std."
    assert [result.url for result in outcome.results] == ["https://tokio.rs/", "https://async.rs/"]


async def test_search_errors_are_returned(tmp_path: Path, session: ClientSession):
    server, _ = build_server(config=config(tmp_path), session=session)

    outcome = await server.search("rust async programming")

    assert outcome.answer == ""
    assert outcome.results == []
    assert outcome.failure_class == FailureClass.CONFIGURATION
    assert outcome.error is not None
    assert outcome.error.startswith("Perplexity authentication not available. Either:")
    assert str(tmp_path / "config.json") in outcome.error


async def test_rate_limited_search(tmp_path: Path, session: ClientSession):
    server, _ = build_server(
        config=config(tmp_path, perplexity_api_key="test-key", search={"rate_limit_requests": 1}),
        session=session,
    )

    with aioresponses() as mocked:
        mocked.post(PERPLEXITY_API_URL, payload=API_PAYLOAD)

        first = await server.search("first")
        second = await server.search("second")

        assert len(mocked.requests) == 1

    assert first.error is None
    assert second.failure_class == FailureClass.ADMISSION
    assert second.error is not None
    assert second.error.startswith("Rate limited. Try again in ")


async def test_tools_over_mcp(fastmcp: FastMCP[None]):
    with aioresponses() as mocked:
        mocked.post(PERPLEXITY_API_URL, payload=API_PAYLOAD)
        mocked.get("https://tokio.rs/notes.txt", status=200, body="Tokio is an async runtime.", content_type="text/plain")

        async with Client[FastMCPTransport](transport=fastmcp) as fastmcp_client:
            search_result = await fastmcp_client.call_tool("web_search", arguments={"query": "rust async programming", "num_results": 1})
            fetch_result = await fastmcp_client.call_tool("fetch_content", arguments={"urls": ["https://tokio.rs/notes.txt", "nope"]})
            activity_result = await fastmcp_client.call_tool("recent_activity", arguments={})

    assert search_result.structured_content is not None
    assert search_result.structured_content["answer"] == "Use tokio or async-std."
    assert len(search_result.structured_content["results"]) == 1

    assert fetch_result.structured_content is not None
    [fetched, invalid] = fetch_result.structured_content["result"]
    assert fetched["content"] == "Tokio is an async runtime."
    assert invalid["error"] == "Invalid URL"

    assert activity_result.structured_content is not None
    assert [entry["kind"] for entry in activity_result.structured_content["entries"]] == ["search", "fetch"]
    assert activity_result.structured_content["rate_limit"]["used"] == 1


async def test_invalid_arguments_are_rejected(fastmcp: FastMCP[None]):
    async with Client[FastMCPTransport](transport=fastmcp) as fastmcp_client:
        with pytest.raises(ToolError):
            _ = await fastmcp_client.call_tool("web_search", arguments={"query": "rust", "num_results": 50})
