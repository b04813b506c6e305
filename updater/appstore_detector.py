"""Mapping installed apps to App Store product IDs via Spotlight."""

import asyncio
import logging
import os
from pathlib import Path

from .models import InstalledApp
from .process import run_command

logger = logging.getLogger(__name__)

ADAM_ID_ATTRIBUTE = "kMDItemAppStoreAdamID"


class AppStoreDetector:
    """Queries the Spotlight index for apps carrying a store product ID.

    The index query cannot be cancelled on its own, so it races a timer and
    whichever finishes first decides the result.
    """

    def __init__(self, timeout: float = 10.0, scopes: list[str] | None = None):
        self.timeout = timeout
        self.scopes = scopes or ["/Applications", str(Path.home() / "Applications")]

    async def find_app_store_apps(self, apps: list[InstalledApp]) -> dict[Path, int]:
        """Return product IDs keyed by the paths of the given apps."""
        by_real_path = {os.path.realpath(app.path): app.path for app in apps}

        query = asyncio.create_task(self._query_index())
        timer = asyncio.create_task(asyncio.sleep(self.timeout))
        done, pending = await asyncio.wait({query, timer}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if query not in done:
            logger.warning("Spotlight query timed out after %.0fs", self.timeout)
            return {}
        try:
            found = query.result()
        except Exception as e:
            logger.warning("Spotlight query failed: %s", e)
            return {}

        adam_ids = {}
        for path, adam_id in found.items():
            app_path = by_real_path.get(os.path.realpath(path))
            if app_path is not None:
                adam_ids[app_path] = adam_id
        logger.info("Spotlight matched %d App Store apps", len(adam_ids))
        return adam_ids

    async def _query_index(self) -> dict[str, int]:
        args = ["mdfind"]
        for scope in self.scopes:
            args += ["-onlyin", scope]
        result = await run_command(*args, f"{ADAM_ID_ATTRIBUTE} == '*'")
        paths = [line for line in result.stdout.splitlines() if line.strip()]
        ids = await asyncio.gather(*(self._read_adam_id(path) for path in paths))
        return {path: adam_id for path, adam_id in zip(paths, ids) if adam_id is not None}

    async def _read_adam_id(self, path: str) -> int | None:
        result = await run_command("mdls", "-raw", "-name", ADAM_ID_ATTRIBUTE, path)
        value = result.stdout.strip()
        return int(value) if value.isdigit() else None
