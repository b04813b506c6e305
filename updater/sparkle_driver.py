"""Unattended Sparkle installs for apps the user has queued."""

import asyncio
import logging
from collections.abc import Callable

from .errors import SparkleUpdateError
from .models import SparkleMetadata, UpdateableApp, UpdateStatus
from .sparkle_checker import EngineFactory, allowed_channels
from .sparkle_engine import (
    AppcastUpdateEngine,
    HeadlessUserDriver,
    NoUpdateReason,
    PermissionReply,
    UpdateChoice,
)
from .sparkle_feed import resolve_feed_url

logger = logging.getLogger(__name__)

DOWNLOAD_WEIGHT = 0.75
EXTRACTION_START = 0.75
EXTRACTION_WEIGHT = 0.20
INSTALLING_PROGRESS = 0.95


class SparkleUpdateDriver(HeadlessUserDriver):
    """Approves every step of an engine session and maps it onto one progress bar.

    Download fills [0, 0.75], extraction [0.75, 0.95], installation holds at
    0.95 until the install completes at 1.0.
    """

    def __init__(
        self,
        update: UpdateableApp,
        include_pre_releases: bool = False,
        on_progress: Callable[[UpdateableApp], None] | None = None,
    ):
        self.update = update
        self.include_pre_releases = include_pre_releases
        self.on_progress = on_progress
        self._expected_length = 0
        self._received_length = 0
        self._done: asyncio.Future | None = None

    # Delegate

    def allowed_channels(self) -> set[str]:
        return allowed_channels(self.include_pre_releases)

    def best_valid_update(self, items: list[SparkleMetadata]) -> SparkleMetadata | None:
        # Install exactly what the check showed, even if the feed changed since.
        return self.update.appcast_item

    # User driver

    def request_permission(self) -> PermissionReply:
        return PermissionReply(automatic_update_checks=False)

    def show_update_found(self, item: SparkleMetadata) -> UpdateChoice:
        self._report(UpdateStatus.DOWNLOADING, 0.0)
        return UpdateChoice.INSTALL

    def show_update_not_found(self, reason: NoUpdateReason, latest_item: SparkleMetadata | None) -> None:
        self._finish(SparkleUpdateError(f"No update found: {reason.value}"))

    def show_updater_error(self, error: Exception) -> None:
        self._finish(error)

    def show_download_expected_length(self, length: int) -> None:
        self._expected_length = length

    def show_download_received_data(self, length: int) -> None:
        self._received_length += length
        if self._expected_length > 0:
            fraction = min(self._received_length / self._expected_length, 1.0)
            self._report(UpdateStatus.DOWNLOADING, fraction * DOWNLOAD_WEIGHT)

    def show_extraction_started(self) -> None:
        self._report(UpdateStatus.EXTRACTING, EXTRACTION_START)

    def show_extraction_progress(self, progress: float) -> None:
        self._report(UpdateStatus.EXTRACTING, EXTRACTION_START + progress * EXTRACTION_WEIGHT)

    def show_ready_to_install(self) -> UpdateChoice:
        return UpdateChoice.INSTALL

    def show_installing_update(self) -> None:
        self._report(UpdateStatus.INSTALLING, INSTALLING_PROGRESS)

    def show_update_installed(self) -> None:
        self._report(UpdateStatus.COMPLETED, 1.0)
        self._finish(None)

    def _report(self, status: UpdateStatus, progress: float) -> None:
        if self._done is not None and self._done.done():
            return
        self.update.set_status(status, max(progress, self.update.progress))
        if self.on_progress:
            self.on_progress(self.update)

    def _finish(self, error: Exception | None) -> None:
        if self._done is None or self._done.done():
            return
        if error is not None:
            self.update.mark_failed(str(error))
            if self.on_progress:
                self.on_progress(self.update)
        self._done.set_result(error)

    async def run(self, engine_factory: EngineFactory = AppcastUpdateEngine, feed_url: str | None = None) -> None:
        """Install the cached update and wait for the session to end.

        Args:
            engine_factory: Called as ``factory(app, feed_url, user_driver, delegate)``
            feed_url: Feed to use instead of the one the app declares

        Raises:
            SparkleUpdateError: No cached item, no feed, or the session failed
        """
        app = self.update.app
        if self.update.appcast_item is None:
            raise SparkleUpdateError(f"No validated update cached for {app.bundle_identifier}")
        feed_url = feed_url or resolve_feed_url(app.path)
        if not feed_url:
            raise SparkleUpdateError(f"{app.app_name} declares no update feed")

        self._done = asyncio.get_running_loop().create_future()
        self.update.progress = 0.0
        engine = engine_factory(app, feed_url, self, self)
        await engine.run()
        if not self._done.done():
            self._finish(SparkleUpdateError("Update session ended without installing"))

        error = self._done.result()
        if error is not None:
            if isinstance(error, SparkleUpdateError):
                raise error
            raise SparkleUpdateError(str(error)) from error
        logger.info("Sparkle update of %s completed", app.app_name)
