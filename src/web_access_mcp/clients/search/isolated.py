"""Replay a blocked session request from a separate interpreter that impersonates Chrome's TLS fingerprint.

The CDN in front of the web endpoint fingerprints the TLS handshake of the primary client. The
replacement interpreter lives in its own virtualenv with `curl_cffi`, provisioned on first use.
"""

import asyncio
import json
from http import HTTPStatus
from pathlib import Path
from textwrap import dedent

from pydantic import BaseModel, ValidationError

from web_access_mcp.clients.search.base import classify_status
from web_access_mcp.clients.search.perplexity_web import WebRequest, is_challenge_block
from web_access_mcp.errors import FailureClass, ProviderError
from web_access_mcp.utils.logging import BASE_LOGGER
from web_access_mcp.utils.subprocess import CommandError, run_command

logger = BASE_LOGGER.getChild("isolated")

BOOTSTRAP_TIMEOUT_SECONDS = 120
REQUEST_TIMEOUT_SECONDS = 90

READY_MARKER = ".curl_cffi-ready"

REPLAY_SCRIPT = dedent(
    """
    import json, sys
    from curl_cffi import requests
    data = json.load(sys.stdin)
    resp = requests.post(data["url"], headers=data["headers"], json=data["payload"], impersonate="chrome", timeout=data["timeout"])
    print(json.dumps({"status": int(resp.status_code), "body": resp.text}))
    """
).strip()


class IsolatedResponse(BaseModel):
    status: int
    body: str


class IsolatedTransport:
    runtime_dir: Path

    def __init__(
        self,
        runtime_dir: Path,
        system_python: str = "python3",
        bootstrap_timeout: float = BOOTSTRAP_TIMEOUT_SECONDS,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.runtime_dir = runtime_dir
        self.system_python = system_python
        self.bootstrap_timeout = bootstrap_timeout
        self.request_timeout = request_timeout
        self._bootstrap_lock = asyncio.Lock()

    @property
    def python(self) -> Path:
        return self.runtime_dir / "bin" / "python3"

    @property
    def ready_marker(self) -> Path:
        """Written once `curl_cffi` is installed. A venv without it is rebuilt on the next call."""
        return self.runtime_dir / READY_MARKER

    async def ensure_runtime(self) -> Path:
        """Provision the isolated interpreter once. Concurrent callers wait for the same bootstrap."""

        async with self._bootstrap_lock:
            if self.ready_marker.exists() and self.python.exists():
                return self.python

            logger.info(f"Provisioning isolated transport runtime in {self.runtime_dir}")

            self.runtime_dir.parent.mkdir(parents=True, exist_ok=True)

            _ = await run_command(self.system_python, "-m", "venv", str(self.runtime_dir), timeout=self.bootstrap_timeout)
            _ = await run_command(self.python, "-m", "pip", "install", "-q", "curl_cffi", timeout=self.bootstrap_timeout)

            if not self.python.exists():
                msg = f"Failed to bootstrap python venv for curl_cffi fallback in {self.runtime_dir}"
                raise CommandError(self.system_python, msg)

            self.ready_marker.touch()

            return self.python

    async def send(self, request: WebRequest) -> tuple[int, str]:
        """Re-issue the exact request through the isolated interpreter.

        Raises:
            ProviderError: transport when the runtime cannot be provisioned or run, malformed_response for
                unreadable output, otherwise classified by the replayed status.
        """

        stdin = json.dumps({"url": request.url, "headers": request.headers, "payload": request.payload, "timeout": self.request_timeout})

        try:
            python = await self.ensure_runtime()
            # The subprocess enforces its own request timeout; this bound also covers interpreter startup.
            result = await run_command(python, "-c", REPLAY_SCRIPT, input=stdin, timeout=self.request_timeout + 10)
        except CommandError as e:
            msg = f"curl_cffi fallback failed: {e}"
            raise ProviderError(msg, FailureClass.TRANSPORT) from e

        try:
            response = IsolatedResponse.model_validate_json(result.stdout.strip())
        except ValidationError as e:
            msg = "curl_cffi fallback returned invalid output"
            raise ProviderError(msg, FailureClass.MALFORMED_RESPONSE) from e

        if HTTPStatus.OK <= response.status < HTTPStatus.MULTIPLE_CHOICES:
            logger.info("curl_cffi fallback got through")
            return response.status, response.body

        if is_challenge_block(response.status, response.body):
            msg = "Perplexity web still blocked by Cloudflare through curl_cffi fallback"
            raise ProviderError(msg, FailureClass.ACTIVE_DEFENSE, status=response.status)

        msg = f"Perplexity web error {response.status}: {response.body[:400]}"
        raise ProviderError(msg, classify_status(response.status), status=response.status)
