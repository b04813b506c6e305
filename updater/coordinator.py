"""Running every source's checker and merging their results."""

import asyncio
import logging
from pathlib import Path

from .appstore_checker import AppStoreChecker
from .appstore_detector import AppStoreDetector
from .brew_checker import HomebrewChecker
from .brew_controller import HomebrewController
from .config import UpdaterSettings
from .models import SOURCE_PRIORITY, InstalledApp, UpdateableApp, UpdateSource
from .sparkle_checker import SparkleChecker
from .sparkle_detector import SparkleDetector

logger = logging.getLogger(__name__)

UpdatesBySource = dict[UpdateSource, list[UpdateableApp]]


def deduplicate(results: UpdatesBySource) -> UpdatesBySource:
    """Keep each app path only under its highest-priority source.

    Homebrew wins over the App Store, which wins over Sparkle.
    """
    claimed: set[Path] = set()
    merged: UpdatesBySource = {}
    for source in SOURCE_PRIORITY:
        kept = []
        for update in results.get(source, []):
            path = Path(update.app.path)
            if path in claimed:
                logger.debug("%s already claimed by a higher-priority source", update.app.app_name)
                continue
            kept.append(update)
        claimed.update(Path(u.app.path) for u in kept)
        merged[source] = kept
    return merged


class UpdateCoordinator:
    """Checks all sources concurrently and deduplicates by app path."""

    def __init__(
        self,
        settings: UpdaterSettings | None = None,
        homebrew: HomebrewChecker | None = None,
        app_store: AppStoreChecker | None = None,
        app_store_detector: AppStoreDetector | None = None,
        sparkle: SparkleChecker | SparkleDetector | None = None,
        controller: HomebrewController | None = None,
    ):
        self.settings = settings or UpdaterSettings()
        timeout = self.settings.request_timeout
        controller = controller or HomebrewController(self.settings.homebrew.brew_prefix, timeout=timeout)

        self.homebrew = homebrew or HomebrewChecker(controller, self.settings.homebrew)
        self.app_store = app_store or AppStoreChecker(self.settings.app_store.region, timeout=timeout)
        self.app_store_detector = app_store_detector or AppStoreDetector(
            timeout=self.settings.app_store.detector_timeout
        )
        if sparkle is None:
            sparkle_cls = SparkleDetector if self.settings.sparkle.lightweight_detection else SparkleChecker
            sparkle = sparkle_cls(self.settings.sparkle.include_pre_releases, timeout=timeout)
        self.sparkle = sparkle

    async def scan_for_updates(self, apps: list[InstalledApp]) -> UpdatesBySource:
        """Run every enabled checker and return deduplicated updates per source.

        All checkers finish before deduplication, so the result does not
        depend on which source answers first.
        """
        homebrew, app_store, sparkle = await asyncio.gather(
            self._guarded(UpdateSource.HOMEBREW, self._check_homebrew(apps)),
            self._guarded(UpdateSource.APP_STORE, self._check_app_store(apps)),
            self._guarded(UpdateSource.SPARKLE, self._check_sparkle(apps)),
        )
        merged = deduplicate({
            UpdateSource.HOMEBREW: homebrew,
            UpdateSource.APP_STORE: app_store,
            UpdateSource.SPARKLE: sparkle,
        })
        logger.info(
            "Scan finished: %s",
            ", ".join(f"{source.value} {len(updates)}" for source, updates in merged.items()),
        )
        return merged

    async def _guarded(self, source: UpdateSource, check) -> list[UpdateableApp]:
        try:
            return await check
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("%s check failed: %s", source.value, e)
            return []

    async def _check_homebrew(self, apps: list[InstalledApp]) -> list[UpdateableApp]:
        if not self.settings.homebrew.enabled:
            return []
        return await self.homebrew.check_for_updates(apps)

    async def _check_app_store(self, apps: list[InstalledApp]) -> list[UpdateableApp]:
        if not self.settings.app_store.enabled:
            return []
        adam_ids = await self.app_store_detector.find_app_store_apps(apps)
        return await self.app_store.check_for_updates(apps, adam_ids)

    async def _check_sparkle(self, apps: list[InstalledApp]) -> list[UpdateableApp]:
        if not self.settings.sparkle.enabled:
            return []
        return await self.sparkle.check_for_updates(apps)
