import asyncio
import contextlib
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

from web_access_mcp.errors import WebAccessError
from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("subprocess")


class CommandError(WebAccessError):
    """A subprocess could not be started, timed out, or exited unsuccessfully."""

    def __init__(self, program: str, detail: str):
        self.program = program
        super().__init__(f"{program} failed: {detail}")


class CommandResult(BaseModel):
    returncode: int
    stdout: str
    stderr: str


async def run_command(
    program: str | Path,
    *args: str,
    timeout: float | None = None,
    input: str | None = None,  # noqa: A002
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a program without a shell and collect its output.

    The process is killed if the timeout expires or the awaiting task is cancelled.

    Raises:
        CommandError: The program is missing, timed out, or exited with a non-zero status.
    """

    name = Path(program).name

    try:
        process = await asyncio.create_subprocess_exec(
            str(program),
            *args,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except OSError as e:
        raise CommandError(name, str(e)) from e

    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate(input=input.encode() if input is not None else None)
    except TimeoutError as e:
        await _kill(process)
        raise CommandError(name, f"timed out after {timeout}s") from e
    except asyncio.CancelledError:
        await _kill(process)
        raise

    result = CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )

    if result.returncode != 0:
        detail = result.stderr.strip() or f"exit status {result.returncode}"
        raise CommandError(name, detail)

    return result


async def try_command(program: str, *args: str, timeout: float) -> str | None:
    """Run a program and return its trimmed output, or None if it failed in any way."""

    try:
        result = await run_command(program, *args, timeout=timeout)
    except CommandError as e:
        logger.debug(str(e))
        return None

    return result.stdout.strip() or None


async def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()

    await process.wait()
