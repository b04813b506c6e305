"""Running shell scripts with elevated privileges."""

import logging
from typing import Protocol

from .process import run_command

logger = logging.getLogger(__name__)


class PrivilegedRunner(Protocol):
    """Runs a shell script as root and reports (success, output)."""

    async def run(self, script: str) -> tuple[bool, str]:
        ...


def _applescript_quote(script: str) -> str:
    return script.replace("\\", "\\\\").replace('"', '\\"')


class OsascriptPrivilegedRunner:
    """Elevates through the standard administrator password prompt."""

    async def run(self, script: str) -> tuple[bool, str]:
        applescript = f'do shell script "{_applescript_quote(script)}" with administrator privileges'
        result = await run_command("/usr/bin/osascript", "-e", applescript)
        if not result.ok:
            logger.warning("Privileged script failed (%s): %s", result.returncode, result.stderr.strip())
        return result.ok, result.output


class SudoPrivilegedRunner:
    """Elevates with non-interactive sudo, for sessions with cached credentials."""

    async def run(self, script: str) -> tuple[bool, str]:
        result = await run_command("/usr/bin/sudo", "-n", "/bin/sh", "-c", script)
        return result.ok, result.output

