"""Engine-driven Sparkle update checks."""

import functools
import logging
from collections.abc import Callable

from .concurrency import gather_chunked
from .models import InstalledApp, SparkleMetadata, UpdateableApp, UpdateSource
from .sparkle_engine import (
    AppcastUpdateEngine,
    HeadlessUserDriver,
    NoUpdateReason,
    UpdateChoice,
    newest_first,
)
from .sparkle_feed import current_os_version, feed_candidates, is_default_channel, meets_minimum_os
from .versioning import Version, is_numerically_newer, is_pre_release_version

logger = logging.getLogger(__name__)

PRE_RELEASE_CHANNELS = frozenset({"beta", "alpha", "nightly", "rc", "dev"})

EngineFactory = Callable[..., AppcastUpdateEngine]


def allowed_channels(include_pre_releases: bool) -> set[str]:
    """Channels the engine may offer; only the default channel without pre-releases."""
    return set(PRE_RELEASE_CHANNELS) if include_pre_releases else set()


def is_pre_release_item(item: SparkleMetadata) -> bool:
    return not is_default_channel(item.channel) or is_pre_release_version(item.display_version)


class _CheckOperation(HeadlessUserDriver):
    """Delegate and user driver for one check-only session.

    The session never installs: "update found" records the result and
    dismisses.
    """

    def __init__(self, app: InstalledApp, include_pre_releases: bool, os_version):
        self.app = app
        self.include_pre_releases = include_pre_releases
        self.os_version = os_version
        self.result: UpdateableApp | None = None

    def allowed_channels(self) -> set[str]:
        return allowed_channels(self.include_pre_releases)

    def best_valid_update(self, items: list[SparkleMetadata]) -> SparkleMetadata | None:
        candidate = None
        for item in newest_first(items):
            if not meets_minimum_os(item.minimum_system_version, self.os_version):
                continue
            if not self.include_pre_releases and is_pre_release_item(item):
                continue
            candidate = item
            break
        if candidate is None:
            return None

        installed = self.app.app_version or self.app.app_build_number
        if Version(candidate.display_version) > Version(installed):
            return candidate
        if self.app.app_build_number and is_numerically_newer(candidate.build_version, self.app.app_build_number):
            return candidate
        return None

    def show_update_found(self, item: SparkleMetadata) -> UpdateChoice:
        installed = self.app.version
        available = Version(item.short_version, item.build_version).sanitize(installed)
        if available > installed:
            self.result = UpdateableApp(
                app=self.app,
                source=UpdateSource.SPARKLE,
                available_version=item.display_version,
                available_build_number=item.build_version,
                release_title=item.title,
                release_description=item.description,
                release_notes_link=item.release_notes_link,
                release_date=item.pub_date,
                is_pre_release=is_pre_release_item(item),
                appcast_item=item,
            )
        else:
            logger.debug("%s: %s is not newer than %s", self.app.app_name, available, installed)
        return UpdateChoice.DISMISS

    def show_update_not_found(self, reason: NoUpdateReason, latest_item: SparkleMetadata | None) -> None:
        latest = latest_item.display_version if latest_item else "none"
        logger.debug("%s: no update (%s, latest %s)", self.app.app_name, reason.value, latest)

    def show_updater_error(self, error: Exception) -> None:
        logger.debug("%s: update check failed: %s", self.app.app_name, error)


class SparkleChecker:
    """Checks Sparkle apps by running a check-only engine session per app."""

    def __init__(
        self,
        include_pre_releases: bool = False,
        timeout: float = 30.0,
        os_version: tuple[int, int, int] | None = None,
        engine_factory: EngineFactory | None = None,
    ):
        """Initialize the checker.

        Args:
            include_pre_releases: Offer beta and other non-default channels
            timeout: Feed request timeout in seconds
            os_version: Running OS version; detected when omitted
            engine_factory: Called as ``factory(app, feed_url, user_driver, delegate)``
        """
        self.include_pre_releases = include_pre_releases
        self.os_version = os_version or current_os_version()
        self.engine_factory = engine_factory or functools.partial(
            AppcastUpdateEngine, timeout=timeout, os_version=self.os_version
        )

    async def check_for_updates(self, apps: list[InstalledApp]) -> list[UpdateableApp]:
        # Any declared or DevMate feed qualifies, whatever framework delivers it
        candidates = feed_candidates(apps, require_framework=False)
        if not candidates:
            return []
        logger.info("Checking %d Sparkle apps", len(candidates))
        updates = await gather_chunked(
            candidates, lambda pair: self.check_app(*pair), label="Sparkle app"
        )
        logger.info("Sparkle: %d updates", len(updates))
        return updates

    async def check_app(self, app: InstalledApp, feed_url: str) -> UpdateableApp | None:
        operation = _CheckOperation(app, self.include_pre_releases, self.os_version)
        engine = self.engine_factory(app, feed_url, operation, operation)
        await engine.run()
        return operation.result
