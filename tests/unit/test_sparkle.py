"""Tests for Sparkle feeds, detection, engine-driven checks and installs."""

from unittest.mock import AsyncMock, patch

import pytest

from updater.errors import SparkleUpdateError
from updater.models import InstalledApp, SparkleMetadata, UpdateStatus
from updater.sparkle_checker import SparkleChecker, allowed_channels, is_pre_release_item
from updater.sparkle_detector import SparkleDetector, select_candidate
from updater.sparkle_driver import SparkleUpdateDriver
from updater.sparkle_engine import (
    AppcastUpdateEngine,
    HeadlessUserDriver,
    NoUpdateReason,
    newest_first,
)
from updater.sparkle_feed import (
    feed_candidates,
    meets_minimum_os,
    parse_appcast,
    parse_os_version,
    resolve_feed_url,
)

FEED_URL = "https://example.com/appcast.xml"
MODERN_OS = (14, 0, 0)


def _item(short, build=None, channel=None, **kwargs):
    return SparkleMetadata(build_version=build or short, short_version=short, channel=channel, **kwargs)


class TestAppcastParsing:
    """Test feed parsing and discovery."""

    def test_parse_items(self, sample_appcast):
        """Should read versions, channel, requirements and release notes."""
        items = parse_appcast(sample_appcast)

        assert [(i.short_version, i.build_version) for i in items] == [("2.1b1", "210"), ("2.0", "200"), ("1.0", "100")]
        assert items[0].channel == "beta"
        stable = items[1]
        assert stable.channel is None
        assert stable.minimum_system_version == "11.0"
        assert stable.description == "Bug fixes"
        assert stable.release_notes_link == "https://example.com/notes/2.0"
        assert stable.enclosure_url == "https://example.com/Example-2.0.zip"
        assert stable.enclosure_length == 1000

    def test_items_without_version_dropped(self):
        """Should skip items that carry no build version."""
        feed = "<rss><channel><item><title>No version</title></item></channel></rss>"
        assert parse_appcast(feed) == []

    def test_malformed_feed(self):
        """Should return nothing for unparseable XML."""
        assert parse_appcast(b"<rss><channel>") == []

    def test_element_versions_without_namespace(self):
        """Should read versions from elements when the enclosure has none."""
        feed = """<rss xmlns:sparkle="http://www.andymatuschak.org/xml-namespaces/sparkle"><channel><item>
            <sparkle:version>42</sparkle:version>
            <sparkle:shortVersionString>4.2</sparkle:shortVersionString>
            <enclosure url="https://example.com/a.zip" />
        </item></channel></rss>"""
        item = parse_appcast(feed)[0]
        assert (item.short_version, item.build_version) == ("4.2", "42")

    def test_resolve_feed_url(self, make_app):
        """Should read SUFeedURL and fall back to the DevMate convention."""
        declared = make_app("Declared", "com.example.declared", extra_info={"SUFeedURL": " 'https://x.test/feed.xml' "})
        devmate = make_app("Dm", "com.example.dm", frameworks=["DevMateKit.framework"])
        plain = make_app("Plain", "com.example.plain")

        assert resolve_feed_url(declared) == "https://x.test/feed.xml"
        assert resolve_feed_url(devmate) == "https://updates.devmate.com/com.example.dm.xml"
        assert resolve_feed_url(plain) is None

    def test_feed_candidates(self, make_app):
        """Should pair unwrapped Sparkle apps with their feeds."""
        sparkle = make_app("Sp", "com.example.sp", frameworks=["Sparkle.framework"], extra_info={"SUFeedURL": FEED_URL})
        no_feed = make_app("NoFeed", "com.example.nofeed", frameworks=["Sparkle.framework"])
        no_framework = make_app("NoFw", "com.example.nofw", extra_info={"SUFeedURL": FEED_URL})
        apps = [
            InstalledApp(path=sparkle, app_name="Sp", bundle_identifier="com.example.sp"),
            InstalledApp(path=no_feed, app_name="NoFeed", bundle_identifier="com.example.nofeed"),
            InstalledApp(path=no_framework, app_name="NoFw", bundle_identifier="com.example.nofw"),
            InstalledApp(path=sparkle, app_name="Wrapped", bundle_identifier="com.example.w", is_wrapped=True),
        ]
        assert [(a.app_name, url) for a, url in feed_candidates(apps)] == [("Sp", FEED_URL)]
        assert [a.app_name for a, _ in feed_candidates(apps, require_framework=False)] == ["Sp", "NoFw"]

    def test_minimum_os(self):
        """Should gate on the running OS only when both versions are known."""
        assert parse_os_version("13.4") == (13, 4, 0)
        assert meets_minimum_os("11.0", MODERN_OS)
        assert not meets_minimum_os("15.1", MODERN_OS)
        assert meets_minimum_os(None, MODERN_OS)
        assert meets_minimum_os("11.0", None)


class TestSparkleDetector:
    """Test lightweight detection."""

    def test_pre_releases_filtered_before_maximum(self, sample_appcast):
        """Should not let a newer beta hide the stable release."""
        items = parse_appcast(sample_appcast)
        assert select_candidate(items, include_pre_releases=False).short_version == "2.0"
        assert select_candidate(items, include_pre_releases=True).short_version == "2.1b1"

    def test_release_channel_is_stable(self, installed_app):
        """Should treat items tagged with the release channel like untagged ones."""
        items = [_item("2.0", "200", channel="release"), _item("2.1", "210", channel="beta")]
        candidate = select_candidate(items, include_pre_releases=False)

        assert candidate.short_version == "2.0"
        assert is_pre_release_item(candidate) is False
        update = SparkleDetector(os_version=MODERN_OS).evaluate(installed_app, candidate)
        assert update.is_pre_release is False

    def test_commit_hashes_only_when_nothing_else(self):
        """Should prefer real versions over commit-hash builds."""
        items = [_item("a1b2c3d4e5f6"), _item("1.5")]
        assert select_candidate(items, False).short_version == "1.5"
        hashes = [_item("a1b2c3d4e5f6")]
        assert select_candidate(hashes, False).short_version == "a1b2c3d4e5f6"

    def test_evaluate(self, installed_app):
        """Should report newer candidates the running OS can install."""
        candidate = _item("2.0", "200", minimum_system_version="11.0")
        update = SparkleDetector(os_version=MODERN_OS).evaluate(installed_app, candidate)
        assert update.available_version == "2.0"
        assert update.available_build_number == "200"
        assert update.is_pre_release is False

        assert SparkleDetector(os_version=(10, 15, 0)).evaluate(installed_app, candidate) is None

    def test_evaluate_build_only_items(self, installed_app):
        """Should compare build numbers when the item has no short version."""
        detector = SparkleDetector(os_version=MODERN_OS)
        assert detector.evaluate(installed_app, SparkleMetadata(build_version="150")) is not None
        assert detector.evaluate(installed_app, SparkleMetadata(build_version="90")) is None

    @pytest.mark.asyncio
    async def test_check_app(self, installed_app, sample_appcast):
        """Should fetch, parse and evaluate the appcast."""
        detector = SparkleDetector(os_version=MODERN_OS)
        with patch.object(detector, "_fetch_feed", new=AsyncMock(return_value=sample_appcast)):
            update = await detector.check_app(installed_app, FEED_URL)

        assert update.available_version == "2.0"
        assert update.release_notes_link == "https://example.com/notes/2.0"
        assert update.appcast_item.enclosure_url.endswith("Example-2.0.zip")

    @pytest.mark.asyncio
    async def test_unreachable_feed(self, installed_app):
        """Should report no update when the feed cannot be fetched."""
        detector = SparkleDetector(os_version=MODERN_OS)
        with patch.object(detector, "_fetch_feed", new=AsyncMock(return_value=None)):
            assert await detector.check_app(installed_app, FEED_URL) is None


class _RecordingDriver(HeadlessUserDriver):
    def __init__(self, best=None):
        self.best = best
        self.events = []

    def allowed_channels(self):
        return set()

    def best_valid_update(self, items):
        self.events.append(("items", [i.display_version for i in items]))
        return self.best

    def show_update_not_found(self, reason, latest_item):
        self.events.append(("not_found", reason, latest_item.display_version if latest_item else None))

    def show_updater_error(self, error):
        self.events.append(("error", str(error)))

    def dismiss(self):
        self.events.append(("dismiss",))


def _engine_factory(appcast, **kwargs):
    """Engine factory whose engines read ``appcast`` instead of the network."""

    def factory(app, feed_url, user_driver, delegate):
        engine = AppcastUpdateEngine(app, feed_url, user_driver, delegate, os_version=MODERN_OS, **kwargs)
        if isinstance(appcast, Exception):
            engine._fetch_appcast = AsyncMock(side_effect=appcast)
        else:
            engine._fetch_appcast = AsyncMock(return_value=appcast)
        return engine

    return factory


class TestAppcastUpdateEngine:
    """Test the engine's session flow."""

    def test_newest_first(self):
        """Should sort by display version, newest first."""
        items = [_item("1.9"), _item("1.10"), _item("1.2")]
        assert [i.short_version for i in newest_first(items)] == ["1.10", "1.9", "1.2"]

    @pytest.mark.asyncio
    async def test_channels_filtered_and_no_update_reason(self, sample_appcast):
        """Should hide disallowed channels and explain why nothing was found."""
        app = InstalledApp(path="/Applications/Example.app", app_name="Example",
                           bundle_identifier="com.example.app", app_version="3.0")
        driver = _RecordingDriver()
        await _engine_factory(sample_appcast)(app, FEED_URL, driver, driver).run()

        assert driver.events == [
            ("items", ["2.0", "1.0"]),
            ("not_found", NoUpdateReason.ON_NEWER_THAN_LATEST, "2.0"),
            ("dismiss",),
        ]

    @pytest.mark.asyncio
    async def test_errors_reported_to_driver(self, installed_app):
        """Should route failures to show_updater_error and still dismiss."""
        driver = _RecordingDriver()
        failure = SparkleUpdateError("Failed to fetch appcast")
        await _engine_factory(failure)(installed_app, FEED_URL, driver, driver).run()
        assert driver.events == [("error", "Failed to fetch appcast"), ("dismiss",)]

    def test_replace_bundle(self, tmp_path):
        """Should swap the new bundle in and drop the backup."""
        target = tmp_path / "Example.app"
        (target / "Contents").mkdir(parents=True)
        (target / "Contents" / "old").write_text("old")
        new_bundle = tmp_path / "extracted" / "Example.app"
        (new_bundle / "Contents").mkdir(parents=True)
        (new_bundle / "Contents" / "new").write_text("new")
        app = InstalledApp(path=target, app_name="Example", bundle_identifier="com.example.app")

        engine = AppcastUpdateEngine(app, FEED_URL, HeadlessUserDriver(), _RecordingDriver(), os_version=MODERN_OS)
        engine._replace_bundle(new_bundle)

        assert (target / "Contents" / "new").exists()
        assert not (target / "Contents" / "old").exists()
        assert [p.name for p in tmp_path.iterdir() if p.name.endswith(".old")] == []


class TestSparkleChecker:
    """Test check-only engine sessions."""

    def test_channels(self):
        """Should allow only the default channel unless pre-releases are wanted."""
        assert allowed_channels(False) == set()
        assert "beta" in allowed_channels(True)
        assert is_pre_release_item(_item("2.0", channel="beta"))
        assert not is_pre_release_item(_item("2.0", channel="release"))
        assert is_pre_release_item(_item("2.0-rc1"))

    @pytest.mark.asyncio
    async def test_stable_update_found(self, installed_app, sample_appcast):
        """Should report the newest stable release."""
        checker = SparkleChecker(os_version=MODERN_OS, engine_factory=_engine_factory(sample_appcast))
        update = await checker.check_app(installed_app, FEED_URL)

        assert update.available_version == "2.0"
        assert update.available_build_number == "200"
        assert update.is_pre_release is False
        assert update.release_description == "Bug fixes"

    @pytest.mark.asyncio
    async def test_pre_release_offered_when_enabled(self, installed_app, sample_appcast):
        """Should offer beta items when pre-releases are included."""
        checker = SparkleChecker(
            include_pre_releases=True, os_version=MODERN_OS, engine_factory=_engine_factory(sample_appcast)
        )
        update = await checker.check_app(installed_app, FEED_URL)
        assert update.available_version == "2.1b1"
        assert update.is_pre_release is True

    @pytest.mark.asyncio
    async def test_up_to_date(self, sample_appcast):
        """Should report nothing when the app is on the latest release."""
        app = InstalledApp(path="/Applications/Example.app", app_name="Example",
                           bundle_identifier="com.example.app", app_version="2.0", app_build_number="200")
        checker = SparkleChecker(os_version=MODERN_OS, engine_factory=_engine_factory(sample_appcast))
        assert await checker.check_app(app, FEED_URL) is None

    @pytest.mark.asyncio
    async def test_system_too_old_skips_item(self, installed_app, sample_appcast):
        """Should fall back to no update when the newest release needs a newer OS."""
        def factory(app, feed_url, user_driver, delegate):
            engine = AppcastUpdateEngine(app, feed_url, user_driver, delegate, os_version=(10, 15, 0))
            engine._fetch_appcast = AsyncMock(return_value=sample_appcast)
            return engine

        checker = SparkleChecker(os_version=(10, 15, 0), engine_factory=factory)
        assert await checker.check_app(installed_app, FEED_URL) is None

    @pytest.mark.asyncio
    async def test_feed_failure(self, installed_app):
        """Should treat a failed session as no update."""
        checker = SparkleChecker(os_version=MODERN_OS, engine_factory=_engine_factory(SparkleUpdateError("offline")))
        assert await checker.check_app(installed_app, FEED_URL) is None

    @pytest.mark.asyncio
    async def test_release_channel_offered_without_pre_releases(self, installed_app):
        """Should pass release-channel items through the engine's channel filter."""
        appcast = b"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0" xmlns:sparkle="http://www.andymatuschak.org/xml-namespaces/sparkle">
  <channel>
    <item>
      <title>Version 3.0</title>
      <sparkle:channel>release</sparkle:channel>
      <enclosure url="https://example.com/Example-3.0.zip" length="1500"
                 sparkle:version="300" sparkle:shortVersionString="3.0" />
    </item>
  </channel>
</rss>
"""
        checker = SparkleChecker(os_version=MODERN_OS, engine_factory=_engine_factory(appcast))
        update = await checker.check_app(installed_app, FEED_URL)

        assert update.available_version == "3.0"
        assert update.is_pre_release is False

    @pytest.mark.asyncio
    async def test_devmate_app_without_sparkle_framework(self, make_app, sample_appcast):
        """Should check the DevMate feed of apps that do not bundle Sparkle."""
        path = make_app("Dm", "com.example.dm", version="1.0", build="100", frameworks=["DevMateKit.framework"])
        app = InstalledApp(path=path, app_name="Dm", bundle_identifier="com.example.dm",
                           app_version="1.0", app_build_number="100")
        feeds = []
        build_engine = _engine_factory(sample_appcast)

        def factory(app, feed_url, user_driver, delegate):
            feeds.append(feed_url)
            return build_engine(app, feed_url, user_driver, delegate)

        checker = SparkleChecker(os_version=MODERN_OS, engine_factory=factory)
        updates = await checker.check_for_updates([app])

        assert feeds == ["https://updates.devmate.com/com.example.dm.xml"]
        assert [u.available_version for u in updates] == ["2.0"]


class _ScriptedEngine:
    """Engine stand-in that replays a fixed callback sequence."""

    script = "install"

    def __init__(self, app, feed_url, user_driver, delegate):
        self.driver = user_driver
        self.delegate = delegate

    async def run(self):
        d = self.driver
        d.request_permission()
        if self.script == "error":
            d.show_updater_error(RuntimeError("disk full"))
        elif self.script == "install":
            d.show_update_found(self.delegate.best_valid_update([]))
            d.show_download_initiated()
            d.show_download_expected_length(100)
            d.show_download_received_data(50)
            d.show_download_received_data(50)
            d.show_extraction_started()
            d.show_extraction_progress(0.5)
            d.show_ready_to_install()
            d.show_installing_update()
            d.show_update_installed()
            d.show_extraction_progress(0.1)
        d.dismiss()


class _FailingEngine(_ScriptedEngine):
    script = "error"


class _SilentEngine(_ScriptedEngine):
    script = "silent"


class TestSparkleUpdateDriver:
    """Test unattended installs."""

    def setup_method(self):
        """Setup test fixtures."""
        self.reports = []

    def _record(self, update):
        self.reports.append((update.status, round(update.progress, 3)))

    @pytest.mark.asyncio
    async def test_progress_mapping(self, sparkle_update):
        """Should map download, extraction and install onto one monotonic bar."""
        driver = SparkleUpdateDriver(sparkle_update, on_progress=self._record)
        await driver.run(_ScriptedEngine, feed_url=FEED_URL)

        assert self.reports == [
            (UpdateStatus.DOWNLOADING, 0.0),
            (UpdateStatus.DOWNLOADING, 0.375),
            (UpdateStatus.DOWNLOADING, 0.75),
            (UpdateStatus.EXTRACTING, 0.75),
            (UpdateStatus.EXTRACTING, 0.85),
            (UpdateStatus.INSTALLING, 0.95),
            (UpdateStatus.COMPLETED, 1.0),
        ]
        assert sparkle_update.status is UpdateStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_installs_cached_item(self, sparkle_update):
        """Should hand the engine exactly the item the check found."""
        driver = SparkleUpdateDriver(sparkle_update)
        assert driver.best_valid_update([]) is sparkle_update.appcast_item

    @pytest.mark.asyncio
    async def test_error_fails_update(self, sparkle_update):
        """Should raise and mark the update failed when the session errors."""
        driver = SparkleUpdateDriver(sparkle_update, on_progress=self._record)
        with pytest.raises(SparkleUpdateError, match="disk full"):
            await driver.run(_FailingEngine, feed_url=FEED_URL)

        assert sparkle_update.status is UpdateStatus.FAILED
        assert sparkle_update.status_message == "disk full"

    @pytest.mark.asyncio
    async def test_session_ending_early_fails(self, sparkle_update):
        """Should fail when the engine stops without installing."""
        driver = SparkleUpdateDriver(sparkle_update)
        with pytest.raises(SparkleUpdateError, match="without installing"):
            await driver.run(_SilentEngine, feed_url=FEED_URL)

    @pytest.mark.asyncio
    async def test_requires_cached_item_and_feed(self, sparkle_update):
        """Should refuse to run without a validated item or a feed."""
        with pytest.raises(SparkleUpdateError, match="declares no update feed"):
            await SparkleUpdateDriver(sparkle_update).run(_ScriptedEngine)

        sparkle_update.appcast_item = None
        with pytest.raises(SparkleUpdateError, match="No validated update"):
            await SparkleUpdateDriver(sparkle_update).run(_ScriptedEngine, feed_url=FEED_URL)

    @pytest.mark.asyncio
    async def test_end_to_end_install(self, tmp_path, sparkle_update, sample_appcast):
        """Should replace the bundle through a real engine session."""
        target = sparkle_update.app.path
        (target / "Contents").mkdir(parents=True)
        (target / "Contents" / "version").write_text("1.0")
        new_bundle = tmp_path / "staged" / "Example.app"
        (new_bundle / "Contents").mkdir(parents=True)
        (new_bundle / "Contents" / "version").write_text("2.0")

        with patch.object(AppcastUpdateEngine, "_download", new=AsyncMock(return_value=tmp_path / "a.zip")), \
                patch.object(AppcastUpdateEngine, "_extract", new=AsyncMock(return_value=new_bundle)):
            await SparkleUpdateDriver(sparkle_update).run(_engine_factory(sample_appcast), feed_url=FEED_URL)

        assert (target / "Contents" / "version").read_text() == "2.0"
        assert sparkle_update.status is UpdateStatus.COMPLETED
        assert sparkle_update.progress == 1.0
