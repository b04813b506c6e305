"""Pytest configuration and fixtures."""

import os
import plistlib

import pytest

from updater.models import InstalledApp, SparkleMetadata, UpdateableApp, UpdateSource


def _write_plist(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(data, f)


@pytest.fixture
def applications_dir(tmp_path):
    """An empty Applications folder."""
    folder = tmp_path / "Applications"
    folder.mkdir()
    return folder


@pytest.fixture
def make_app(applications_dir):
    """Build a minimal macOS app bundle and return its path."""

    def _make(
        name,
        bundle_id,
        version="1.0",
        build=None,
        frameworks=(),
        extra_info=None,
        receipt=False,
        folder=None,
    ):
        app = (folder or applications_dir) / f"{name}.app"
        contents = app / "Contents"
        info = {"CFBundleIdentifier": bundle_id, "CFBundleName": name}
        if version is not None:
            info["CFBundleShortVersionString"] = version
        if build is not None:
            info["CFBundleVersion"] = build
        info.update(extra_info or {})
        _write_plist(contents / "Info.plist", info)
        for framework in frameworks:
            (contents / "Frameworks" / framework).mkdir(parents=True)
        if receipt:
            (contents / "_MASReceipt").mkdir()
            (contents / "_MASReceipt" / "receipt").write_bytes(b"receipt")
        return app

    return _make


@pytest.fixture
def make_ios_app(applications_dir):
    """Build an installed iOS app wrapper and return the outer wrapper path."""

    def _make(name="Dreo", inner="Runner.app", bundle_id="com.example.dreo", version="1.0", build="10",
              protected=b"protected-blob", item_id=123456):
        wrapper = applications_dir / f"{name}.app"
        inner_app = wrapper / "Wrapper" / inner
        _write_plist(inner_app / "Info.plist", {
            "CFBundleIdentifier": bundle_id,
            "CFBundleDisplayName": name,
            "CFBundleShortVersionString": version,
            "CFBundleVersion": build,
        })
        metadata = {
            "itemId": item_id,
            "itemName": name,
            "artistName": "Example Corp",
            "bundleShortVersionString": version,
            "bundleVersion": build,
            "softwareVersionExternalIdentifier": 555,
            "storefrontCountryCode": "US",
        }
        if protected is not None:
            metadata["protectedMetadata"] = protected
        _write_plist(wrapper / "Wrapper" / "iTunesMetadata.plist", metadata)
        os.symlink(f"Wrapper/{inner}", wrapper / "WrappedBundle")
        return wrapper

    return _make


@pytest.fixture
def installed_app(tmp_path):
    """An InstalledApp record that does not need a bundle on disk."""
    return InstalledApp(
        path=tmp_path / "Example.app",
        app_name="Example",
        bundle_identifier="com.example.app",
        app_version="1.0",
        app_build_number="100",
    )


@pytest.fixture
def sparkle_update(installed_app):
    """A Sparkle update with a cached appcast item."""
    item = SparkleMetadata(
        build_version="200",
        short_version="2.0",
        enclosure_url="https://example.com/Example-2.0.zip",
        enclosure_length=1000,
    )
    return UpdateableApp(
        app=installed_app,
        source=UpdateSource.SPARKLE,
        available_version="2.0",
        available_build_number="200",
        appcast_item=item,
    )


SAMPLE_APPCAST = """<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0" xmlns:sparkle="http://www.andymatuschak.org/xml-namespaces/sparkle">
  <channel>
    <title>Example</title>
    <item>
      <title>Version 2.1 beta</title>
      <sparkle:channel>beta</sparkle:channel>
      <pubDate>Mon, 03 Mar 2025 10:00:00 +0000</pubDate>
      <enclosure url="https://example.com/Example-2.1b1.zip" length="1200"
                 sparkle:version="210" sparkle:shortVersionString="2.1b1" />
    </item>
    <item>
      <title>Version 2.0</title>
      <description>Bug fixes</description>
      <pubDate>Mon, 03 Feb 2025 10:00:00 +0000</pubDate>
      <sparkle:minimumSystemVersion>11.0</sparkle:minimumSystemVersion>
      <sparkle:releaseNotesLink>https://example.com/notes/2.0</sparkle:releaseNotesLink>
      <enclosure url="https://example.com/Example-2.0.zip" length="1000"
                 sparkle:version="200" sparkle:shortVersionString="2.0" />
    </item>
    <item>
      <title>Version 1.0</title>
      <pubDate>Mon, 06 Jan 2025 10:00:00 +0000</pubDate>
      <enclosure url="https://example.com/Example-1.0.zip" length="900"
                 sparkle:version="100" sparkle:shortVersionString="1.0" />
    </item>
  </channel>
</rss>
"""


@pytest.fixture
def sample_appcast():
    """Appcast with a beta, a stable 2.0 and the installed 1.0."""
    return SAMPLE_APPCAST.encode()
