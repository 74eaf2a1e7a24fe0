import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from web_access_mcp.clients.search.isolated import IsolatedTransport
from web_access_mcp.clients.search.perplexity_web import WebRequest
from web_access_mcp.errors import FailureClass, ProviderError
from web_access_mcp.utils.subprocess import CommandError, CommandResult

REQUEST = WebRequest(url="https://www.perplexity.ai/rest/sse/perplexity_ask", headers={"cookie": "a=1"}, payload={"query_str": "rust"}, num_results=3)


def provisioned(tmp_path: Path) -> IsolatedTransport:
    transport = IsolatedTransport(runtime_dir=tmp_path / "venv")
    transport.python.parent.mkdir(parents=True)
    transport.python.touch()
    transport.ready_marker.touch()
    return transport


def result(stdout: str) -> CommandResult:
    return CommandResult(returncode=0, stdout=stdout, stderr="")


async def test_bootstrap_runs_once(tmp_path: Path):
    transport = IsolatedTransport(runtime_dir=tmp_path / "venv")

    async def fake_run(program, *args, **kwargs):
        if args[:2] == ("-m", "venv"):
            transport.python.parent.mkdir(parents=True)
            transport.python.touch()
        return result("")

    with patch("web_access_mcp.clients.search.isolated.run_command", side_effect=fake_run) as run_command:
        first = await transport.ensure_runtime()
        second = await transport.ensure_runtime()

    assert first == second == transport.python
    assert [call.args[1:3] for call in run_command.call_args_list] == [("-m", "venv"), ("-m", "pip")]
    assert run_command.call_args_list[1].args[-1] == "curl_cffi"
    assert transport.ready_marker.is_file()


async def test_send_replays_request(tmp_path: Path):
    transport = provisioned(tmp_path)
    run_command = AsyncMock(return_value=result(json.dumps({"status": 200, "body": "data: {}\n\n"})))

    with patch("web_access_mcp.clients.search.isolated.run_command", run_command):
        status, body = await transport.send(REQUEST)

    assert (status, body) == (200, "data: {}\n\n")

    sent = json.loads(run_command.call_args.kwargs["input"])
    assert sent["url"] == REQUEST.url
    assert sent["headers"] == REQUEST.headers
    assert sent["payload"] == REQUEST.payload
    assert sent["timeout"] == 90


async def test_still_blocked_is_active_defense(tmp_path: Path):
    transport = provisioned(tmp_path)
    run_command = AsyncMock(return_value=result(json.dumps({"status": 403, "body": "Just a moment... cloudflare"})))

    with patch("web_access_mcp.clients.search.isolated.run_command", run_command), pytest.raises(ProviderError) as exc_info:
        _ = await transport.send(REQUEST)

    assert exc_info.value.failure_class is FailureClass.ACTIVE_DEFENSE


async def test_invalid_output_is_malformed(tmp_path: Path):
    transport = provisioned(tmp_path)
    run_command = AsyncMock(return_value=result("Traceback: nothing useful"))

    with patch("web_access_mcp.clients.search.isolated.run_command", run_command), pytest.raises(ProviderError) as exc_info:
        _ = await transport.send(REQUEST)

    assert exc_info.value.failure_class is FailureClass.MALFORMED_RESPONSE


async def test_bootstrap_failure_is_transport(tmp_path: Path):
    transport = IsolatedTransport(runtime_dir=tmp_path / "venv")
    run_command = AsyncMock(side_effect=CommandError("python3", "No module named venv"))

    with patch("web_access_mcp.clients.search.isolated.run_command", run_command), pytest.raises(ProviderError) as exc_info:
        _ = await transport.send(REQUEST)

    assert exc_info.value.failure_class is FailureClass.TRANSPORT
    assert "No module named venv" in str(exc_info.value)


async def test_failed_install_is_retried_on_the_next_send(tmp_path: Path):
    transport = IsolatedTransport(runtime_dir=tmp_path / "venv")
    pip_failures = [CommandError("pip", "Could not find a version that satisfies the requirement curl_cffi")]

    async def fake_run(program, *args, **kwargs):
        if args[:2] == ("-m", "venv"):
            transport.python.parent.mkdir(parents=True, exist_ok=True)
            transport.python.touch()
        elif args[:2] == ("-m", "pip") and pip_failures:
            raise pip_failures.pop()
        elif args[:1] == ("-c",):
            return result(json.dumps({"status": 200, "body": "data: {}\n\n"}))
        return result("")

    with patch("web_access_mcp.clients.search.isolated.run_command", side_effect=fake_run) as run_command:
        with pytest.raises(ProviderError) as exc_info:
            _ = await transport.send(REQUEST)

        assert exc_info.value.failure_class is FailureClass.TRANSPORT
        assert not transport.ready_marker.exists()

        status, _ = await transport.send(REQUEST)

    assert status == 200
    assert [call.args[1:3] for call in run_command.call_args_list][:4] == [("-m", "venv"), ("-m", "pip"), ("-m", "venv"), ("-m", "pip")]
    assert transport.ready_marker.is_file()
