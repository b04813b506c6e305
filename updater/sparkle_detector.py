"""Lightweight Sparkle detection by reading appcasts directly."""

import functools
import logging

import httpx

from .concurrency import gather_chunked
from .models import InstalledApp, SparkleMetadata, UpdateableApp, UpdateSource
from .sparkle_feed import (
    current_os_version,
    feed_candidates,
    is_default_channel,
    meets_minimum_os,
    parse_appcast,
    parse_pub_date,
)
from .versioning import Version, is_commit_hash_version, is_pre_release_version

logger = logging.getLogger(__name__)


def _item_version(item: SparkleMetadata) -> str:
    return item.short_version or item.build_version


def _compare_items(first: SparkleMetadata, second: SparkleMetadata) -> int:
    v1 = Version(_item_version(first))
    v2 = Version(_item_version(second))
    if not v1.is_empty and not v2.is_empty and v1 != v2:
        return -1 if v1 < v2 else 1
    d1, d2 = parse_pub_date(first.pub_date), parse_pub_date(second.pub_date)
    if d1 and d2 and d1 != d2:
        return -1 if d1 < d2 else 1
    return 0


def select_candidate(items: list[SparkleMetadata], include_pre_releases: bool) -> SparkleMetadata | None:
    """Pick the newest eligible item.

    Filtering happens before picking the maximum so a newer pre-release can
    never hide an older stable release.
    """
    if not include_pre_releases:
        items = [i for i in items if is_default_channel(i.channel)]
        items = [i for i in items if not is_pre_release_version(_item_version(i))]

    # Drop commit-hash builds unless the feed publishes nothing else.
    if not all(is_commit_hash_version(_item_version(i)) for i in items):
        items = [i for i in items if not is_commit_hash_version(_item_version(i))]

    if not items:
        return None
    return max(items, key=functools.cmp_to_key(_compare_items))


class SparkleDetector:
    """Finds Sparkle updates by fetching and parsing each app's appcast."""

    def __init__(
        self,
        include_pre_releases: bool = False,
        timeout: float = 30.0,
        os_version: tuple[int, int, int] | None = None,
    ):
        self.include_pre_releases = include_pre_releases
        self.timeout = timeout
        self.os_version = os_version or current_os_version()

    async def check_for_updates(self, apps: list[InstalledApp]) -> list[UpdateableApp]:
        candidates = feed_candidates(apps)
        if not candidates:
            return []

        logger.info("Checking %d Sparkle feeds", len(candidates))
        updates = await gather_chunked(
            candidates, lambda pair: self.check_app(*pair), label="Sparkle app"
        )
        logger.info("Sparkle: %d updates", len(updates))
        return updates

    async def check_app(self, app: InstalledApp, feed_url: str) -> UpdateableApp | None:
        data = await self._fetch_feed(feed_url)
        if data is None:
            return None
        items = parse_appcast(data)
        if not items:
            logger.debug("No items in appcast %s", feed_url)
            return None
        candidate = select_candidate(items, self.include_pre_releases)
        if candidate is None:
            return None
        return self.evaluate(app, candidate)

    def evaluate(self, app: InstalledApp, candidate: SparkleMetadata) -> UpdateableApp | None:
        short = app.app_version or ""
        build = app.app_build_number or ""
        if candidate.short_version:
            installed_text, available_text = short, candidate.short_version
        else:
            installed_text = short if (build == short or not build) else build
            available_text = candidate.build_version

        installed, available = Version(installed_text), Version(available_text)
        if installed.is_empty or available.is_empty:
            return None
        if not available > installed:
            logger.debug("%s is up to date (%s)", app.app_name, installed_text)
            return None
        if not meets_minimum_os(candidate.minimum_system_version, self.os_version):
            logger.debug("%s %s requires macOS %s", app.app_name, available_text, candidate.minimum_system_version)
            return None

        return UpdateableApp(
            app=app,
            source=UpdateSource.SPARKLE,
            available_version=available_text,
            available_build_number=candidate.build_version,
            release_title=candidate.title,
            release_description=candidate.description,
            release_notes_link=candidate.release_notes_link,
            release_date=candidate.pub_date,
            is_pre_release=not is_default_channel(candidate.channel) or is_pre_release_version(available_text),
            appcast_item=candidate,
        )

    async def _fetch_feed(self, url: str) -> bytes | None:
        """Download an appcast.

        Returns:
            Raw feed bytes or None on failure
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.debug("Failed to fetch %s: %s", url, e)
            return None
