"""Holding scan results and applying updates from every source."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path

from .appstore_updater import AppStoreUpdater
from .brew_checker import attach_cask_tokens
from .brew_controller import HomebrewController
from .bundles import info_plist_path, read_bundle_version_directly, scan_applications
from .config import SettingsStore
from .coordinator import UpdateCoordinator, UpdatesBySource
from .errors import SparkleUpdateError
from .models import InstalledApp, UpdateableApp, UpdateSource, UpdateStatus
from .process import run_command
from .sparkle_checker import EngineFactory
from .sparkle_detector import SparkleDetector
from .sparkle_driver import SparkleUpdateDriver
from .sparkle_engine import AppcastUpdateEngine
from .update_queue import UpdateQueue

logger = logging.getLogger(__name__)

VERIFY_ATTEMPTS = 40
VERIFY_INTERVAL = 1.0


def _bundle_mtime(path: Path) -> float | None:
    plist = info_plist_path(path)
    try:
        return plist.stat().st_mtime if plist else None
    except OSError:
        return None


class UpdateManager:
    """Owns the current update lists and dispatches updates by source.

    All mutations of the update lists happen in the manager's own coroutines,
    so background work never edits them concurrently.
    """

    def __init__(
        self,
        store: SettingsStore | None = None,
        coordinator: UpdateCoordinator | None = None,
        controller: HomebrewController | None = None,
        app_store_updater: AppStoreUpdater | None = None,
        sparkle_detector: SparkleDetector | None = None,
        queue: UpdateQueue | None = None,
        engine_factory: EngineFactory = AppcastUpdateEngine,
    ):
        self.store = store or SettingsStore()
        self.settings = self.store.load_settings()
        timeout = self.settings.request_timeout

        self.controller = controller or HomebrewController(self.settings.homebrew.brew_prefix, timeout=timeout)
        self.coordinator = coordinator or UpdateCoordinator(self.settings, controller=self.controller)
        self.app_store_updater = app_store_updater or AppStoreUpdater()
        self.sparkle_detector = sparkle_detector or SparkleDetector(
            self.settings.sparkle.include_pre_releases, timeout=timeout
        )
        self.queue = queue or UpdateQueue()
        self.engine_factory = engine_factory

        self.updates_by_source: UpdatesBySource = {source: [] for source in UpdateSource}
        self.hidden_updates: dict[str, str] = self.store.hidden_updates()
        self.is_scanning = False
        self.last_scan_date: datetime | None = None
        self.verify_attempts = VERIFY_ATTEMPTS
        self.verify_interval = VERIFY_INTERVAL

    # Scanning

    async def scan(self) -> UpdatesBySource:
        """Scan installed apps and replace the current update lists."""
        if self.is_scanning:
            logger.info("Scan already in progress")
            return self.updates_by_source

        self.is_scanning = True
        try:
            apps = await asyncio.to_thread(scan_applications, self.settings.app_folders)
            if self.settings.homebrew.enabled:
                _, casks = await asyncio.to_thread(self.controller.scan_installed_packages)
                attach_cask_tokens(apps, casks)

            results = await self.coordinator.scan_for_updates(apps)
            self.updates_by_source = {
                source: [u for u in results.get(source, []) if u.unique_identifier not in self.hidden_updates]
                for source in UpdateSource
            }
            self.last_scan_date = datetime.now()
        finally:
            self.is_scanning = False
        return self.updates_by_source

    def all_updates(self) -> list[UpdateableApp]:
        return [u for source in UpdateSource for u in self.updates_by_source.get(source, [])]

    def find_update(self, bundle_id: str, source: UpdateSource | None = None) -> UpdateableApp | None:
        for update in self.all_updates():
            if update.id == bundle_id and (source is None or update.source == source):
                return update
        return None

    def remove_update(self, update: UpdateableApp) -> None:
        updates = self.updates_by_source.get(update.source, [])
        self.updates_by_source[update.source] = [u for u in updates if u is not update]

    # Hiding

    def hide_update(self, update: UpdateableApp) -> None:
        self.hidden_updates[update.unique_identifier] = update.source.value
        self.store.save_hidden_updates(self.hidden_updates)
        self.remove_update(update)

    def unhide_update(self, unique_identifier: str) -> bool:
        """Forget a hidden update; it reappears on the next scan."""
        if self.hidden_updates.pop(unique_identifier, None) is None:
            return False
        self.store.save_hidden_updates(self.hidden_updates)
        return True

    # Applying

    async def update_app(self, update: UpdateableApp) -> bool:
        """Apply one update.

        Failures mark the update as failed and leave it in its list.

        Returns:
            True when the update was applied or handed off
        """
        logger.info("Updating %s via %s", update.app.app_name, update.source.value)
        if update.source == UpdateSource.HOMEBREW:
            return await self._update_homebrew(update)
        if update.source == UpdateSource.APP_STORE:
            return await self._update_app_store(update)
        return await self._update_sparkle(update)

    async def update_all(self, source: UpdateSource | None = None) -> dict[str, bool]:
        """Apply every selected update, optionally limited to one source.

        Homebrew and App Store updates run one at a time; Sparkle updates go
        through the bounded queue when the in-process driver is enabled.
        """
        sources = [source] if source else list(UpdateSource)
        results: dict[str, bool] = {}
        for src in sources:
            targets = [u for u in self.updates_by_source.get(src, []) if u.is_selected_for_update]
            if src == UpdateSource.SPARKLE:
                outcomes = await asyncio.gather(*(self.update_app(u) for u in targets))
                results.update({u.unique_identifier: ok for u, ok in zip(targets, outcomes)})
                continue
            for update in targets:
                results[update.unique_identifier] = await self.update_app(update)
        return results

    async def _update_homebrew(self, update: UpdateableApp) -> bool:
        update.set_status(UpdateStatus.DOWNLOADING, 0.0)
        try:
            await self.controller.upgrade_package(update.cask_token or update.app.cask, cask=not update.is_formula)
        except Exception as e:
            logger.error("Homebrew upgrade of %s failed: %s", update.cask_token, e)
            update.mark_failed(str(e))
            return False
        update.set_status(UpdateStatus.COMPLETED, 1.0)
        self.remove_update(update)
        return True

    async def _update_app_store(self, update: UpdateableApp) -> bool:
        if update.app_store_id is None:
            update.mark_failed("No App Store product ID")
            return False

        def on_progress(progress: float, status: str) -> None:
            if status.startswith("Error"):
                return
            update.set_status(
                UpdateStatus.INSTALLING if progress >= 0.9 else UpdateStatus.DOWNLOADING, progress
            )
            update.status_message = status

        before = _bundle_mtime(update.app.path)
        try:
            await self.app_store_updater.update_app(update.app_store_id, on_progress)
        except Exception as e:
            logger.error("App Store update of %s failed: %s", update.app.app_name, e)
            update.mark_failed(str(e))
            return False

        if update.status_message != "Already up to date":
            update.set_status(UpdateStatus.VERIFYING, 1.0)
            await self.wait_for_bundle_update(update, before)
        update.set_status(UpdateStatus.COMPLETED, 1.0)
        self.remove_update(update)
        return True

    async def wait_for_bundle_update(self, update: UpdateableApp, previous_mtime: float | None = None) -> bool:
        """Poll the bundle until its version or Info.plist changes.

        Returns:
            False if nothing changed within the polling window
        """
        app = update.app
        for _ in range(self.verify_attempts):
            version, build = await asyncio.to_thread(read_bundle_version_directly, app.path)
            if version and (version, build) != (app.app_version, app.app_build_number):
                logger.info("%s is now %s", app.app_name, version)
                return True
            mtime = _bundle_mtime(app.path)
            if previous_mtime is not None and mtime is not None and mtime != previous_mtime:
                return True
            await asyncio.sleep(self.verify_interval)
        logger.warning("Could not verify the update of %s; removing it anyway", app.app_name)
        return False

    async def _update_sparkle(self, update: UpdateableApp) -> bool:
        if self.settings.sparkle.use_in_process_driver:
            return await self._queue_sparkle(update)

        # The app's own updater takes over once it is running.
        result = await run_command("/usr/bin/open", "-b", update.app.bundle_identifier)
        if not result.ok:
            update.mark_failed(result.output.strip() or "Could not open the app")
            return False
        update.status_message = "Opened for update"
        return True

    async def _queue_sparkle(self, update: UpdateableApp) -> bool:
        driver = SparkleUpdateDriver(update, self.settings.sparkle.include_pre_releases)

        async def work() -> bool:
            try:
                await driver.run(self.engine_factory)
            except SparkleUpdateError as e:
                logger.error("Sparkle update of %s failed: %s", update.app.app_name, e)
                if update.status is not UpdateStatus.FAILED:
                    update.mark_failed(str(e))
                return False
            self.remove_update(update)
            return True

        task = self.queue.add_operation(update.app.bundle_identifier, work)
        if task is None:
            return False
        result = await task
        return bool(result)

    async def refresh_sparkle_app_with_url(self, app: InstalledApp, feed_url: str) -> UpdateableApp | None:
        """Re-check one app against another feed and replace its Sparkle entry."""
        update = await self.sparkle_detector.check_app(app, feed_url)
        sparkle = [u for u in self.updates_by_source.get(UpdateSource.SPARKLE, []) if u.id != app.bundle_identifier]
        if update is not None:
            sparkle.append(update)
        self.updates_by_source[UpdateSource.SPARKLE] = sparkle
        return update
