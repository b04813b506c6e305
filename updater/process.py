"""Async subprocess execution."""

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


async def run_command(
    *args: str,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    ``communicate`` reads stdout and stderr while waiting for exit, so large
    outputs cannot fill the pipe buffer and stall the child.

    Args:
        args: Program and arguments
        timeout: Seconds before the process is killed
        env: Replacement environment

    Returns:
        CommandResult with decoded output
    """
    logger.debug("Running %s", " ".join(args))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def stream_command(*args: str, on_line, env: dict[str, str] | None = None) -> CommandResult:
    """Run a command, passing each merged output line to ``on_line`` as it arrives."""
    logger.debug("Streaming %s", " ".join(args))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=env,
    )
    lines: list[str] = []
    assert process.stdout is not None
    # mas redraws progress with carriage returns
    buffer = b""
    while chunk := await process.stdout.read(1024):
        buffer += chunk
        *complete, buffer = buffer.replace(b"\r", b"\n").split(b"\n")
        for raw in complete:
            line = raw.decode(errors="replace").strip()
            if line:
                lines.append(line)
                on_line(line)
    if buffer.strip():
        line = buffer.decode(errors="replace").strip()
        lines.append(line)
        on_line(line)
    await process.wait()
    return CommandResult(returncode=process.returncode, stdout="\n".join(lines), stderr="")
