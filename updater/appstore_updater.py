"""Installing App Store updates through the ``mas`` command line tool."""

import logging
import re
import shutil
from collections.abc import Callable

from .errors import CommandFailed
from .process import stream_command

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

INSTALLING_PROGRESS = 0.9

_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_INSTALLING = re.compile(r"\binstalling\b", re.IGNORECASE)
_INSTALLED = re.compile(r"\binstalled\b|\bupgraded\b", re.IGNORECASE)
_NOTHING_TO_DO = re.compile(
    r"nothing (found )?to upgrade|no (installed )?apps? with pending updates|up[- ]to[- ]date",
    re.IGNORECASE,
)
_ERROR = re.compile(r"^(error|fatal)\b:?\s*(.*)$", re.IGNORECASE)


def parse_progress_line(line: str) -> tuple[float, str] | None:
    """Translate one line of ``mas`` output into (progress, status).

    Download percentages fill [0, 0.9]; installation sits at 0.9.
    """
    if match := _ERROR.match(line.strip()):
        return 0.0, f"Error: {match.group(2) or line.strip()}"
    if _INSTALLING.search(line):
        return INSTALLING_PROGRESS, "Installing"
    if match := _PERCENT.search(line):
        fraction = min(float(match.group(1)) / 100.0, 1.0)
        return fraction * INSTALLING_PROGRESS, "Downloading"
    return None


class AppStoreUpdater:
    """Drives ``mas upgrade`` for a single product ID and reports progress."""

    def __init__(self, mas_path: str | None = None):
        self.mas_path = mas_path or shutil.which("mas") or "/opt/homebrew/bin/mas"

    async def update_app(self, adam_id: int, on_progress: ProgressCallback) -> None:
        """Upgrade one app.

        Args:
            adam_id: Store product ID
            on_progress: Called with (fraction, status) as output arrives

        Raises:
            CommandFailed: mas reported an error or exited non-zero
        """
        state = {"installed": False, "nothing": False, "error": None}

        def handle(line: str) -> None:
            if _NOTHING_TO_DO.search(line):
                state["nothing"] = True
                return
            if _INSTALLED.search(line) and not _INSTALLING.search(line):
                state["installed"] = True
            parsed = parse_progress_line(line)
            if parsed is None:
                return
            if parsed[1].startswith("Error"):
                state["error"] = parsed[1]
            on_progress(*parsed)

        result = await stream_command(self.mas_path, "upgrade", str(adam_id), on_line=handle)

        if state["error"] or not result.ok:
            message = state["error"] or f"Error: mas exited with status {result.returncode}"
            on_progress(0.0, message)
            raise CommandFailed(result.output or message, f"mas upgrade {adam_id}")
        if state["nothing"] and not state["installed"]:
            on_progress(1.0, "Already up to date")
            return
        logger.info("App Store update for %s finished", adam_id)
        on_progress(1.0, "Completed")
