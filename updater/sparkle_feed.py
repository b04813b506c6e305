"""Sparkle feed discovery and appcast parsing."""

import logging
import platform
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path

from .bundles import read_plist
from .models import InstalledApp, SparkleMetadata

logger = logging.getLogger(__name__)

SPARKLE_NS = "http://www.andymatuschak.org/xml-namespaces/sparkle"
DEVMATE_FEED = "https://updates.devmate.com/{bundle_id}.xml"
DEFAULT_CHANNEL = "release"
PUB_DATE_FORMAT = "%a, %d %b %Y %H:%M:%S %z"


def is_default_channel(channel: str | None) -> bool:
    """Items without a channel tag, or tagged "release", are stable."""
    return channel is None or channel.strip().lower() in ("", DEFAULT_CHANNEL)


def has_sparkle_framework(app_path: Path) -> bool:
    return (Path(app_path) / "Contents" / "Frameworks" / "Sparkle.framework").exists()


def _bundles_devmate(app_path: Path) -> bool:
    frameworks = Path(app_path) / "Contents" / "Frameworks"
    try:
        return any("DevMateKit" in entry.name for entry in frameworks.iterdir())
    except OSError:
        return False


def resolve_feed_url(app_path: Path, info: dict | None = None) -> str | None:
    """Feed URL declared in Info.plist, or the DevMate convention as fallback."""
    app_path = Path(app_path)
    if info is None:
        info = read_plist(app_path / "Contents" / "Info.plist") or {}
    url = info.get("SUFeedURL") or info.get("SUFeedUrl")
    if isinstance(url, str):
        url = url.strip().strip("'\"")
        if url:
            return url
    bundle_id = info.get("CFBundleIdentifier")
    if bundle_id and _bundles_devmate(app_path):
        return DEVMATE_FEED.format(bundle_id=bundle_id)
    return None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _sparkle_attr(element: ET.Element, name: str) -> str | None:
    value = element.get(f"{{{SPARKLE_NS}}}{name}")
    if value is None:
        # Feeds that forget to declare the namespace keep the prefix literally.
        value = element.get(f"sparkle:{name}")
    return value.strip() if value and value.strip() else None


def _parse_item(item: ET.Element) -> SparkleMetadata | None:
    fields: dict[str, str] = {}
    enclosure_url = None
    enclosure_length = None

    for child in item:
        name = _local(child.tag)
        text = (child.text or "").strip()
        if name == "enclosure":
            if enclosure_url is None:
                enclosure_url = child.get("url")
                length = child.get("length")
                enclosure_length = int(length) if length and length.isdigit() else None
            for attr, key in (("shortVersionString", "short"), ("version", "build")):
                value = _sparkle_attr(child, attr)
                if value:
                    # Enclosure attributes take priority over elements.
                    fields[key] = value
            continue
        if not text:
            continue
        key = {
            "shortVersionString": "short",
            "version": "build",
            "title": "title",
            "description": "description",
            "releaseNotesLink": "notes",
            "fullReleaseNotesLink": "full_notes",
            "pubDate": "pub_date",
            "channel": "channel",
            "minimumSystemVersion": "minimum_os",
        }.get(name)
        if key and key not in fields:
            fields[key] = text

    build = fields.get("build")
    if not build:
        return None
    return SparkleMetadata(
        build_version=build,
        short_version=fields.get("short"),
        channel=fields.get("channel"),
        minimum_system_version=fields.get("minimum_os"),
        title=fields.get("title"),
        description=fields.get("description"),
        release_notes_link=fields.get("notes") or fields.get("full_notes"),
        pub_date=fields.get("pub_date"),
        enclosure_url=enclosure_url,
        enclosure_length=enclosure_length,
    )


def parse_appcast(data: bytes | str) -> list[SparkleMetadata]:
    """Parse every ``<item>`` of an appcast; items without a build version are dropped."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        logger.debug("Malformed appcast: %s", e)
        return []
    items = []
    for element in root.iter():
        if _local(element.tag) == "item":
            item = _parse_item(element)
            if item:
                items.append(item)
    return items


def parse_pub_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), PUB_DATE_FORMAT)
    except ValueError:
        return None


def parse_os_version(value: str | None) -> tuple[int, int, int] | None:
    if not value:
        return None
    numbers = [int(p) for p in value.strip().split(".") if p.isdigit()]
    if not numbers:
        return None
    numbers += [0] * (3 - len(numbers))
    return tuple(numbers[:3])


def current_os_version() -> tuple[int, int, int] | None:
    """Running macOS version, or None elsewhere."""
    return parse_os_version(platform.mac_ver()[0])


def meets_minimum_os(minimum: str | None, current: tuple[int, int, int] | None) -> bool:
    required = parse_os_version(minimum)
    if required is None or current is None:
        return True
    return current >= required


def feed_candidates(
    apps: list[InstalledApp], require_framework: bool = True
) -> list[tuple[InstalledApp, str]]:
    """Pair each non-wrapped app with its feed URL.

    Args:
        apps: Installed apps
        require_framework: Only consider apps that bundle Sparkle.framework

    Returns:
        (app, feed URL) pairs for apps with a resolvable feed
    """
    candidates = []
    for app in apps:
        if app.is_wrapped:
            continue
        if require_framework and not has_sparkle_framework(app.path):
            continue
        feed_url = resolve_feed_url(app.path)
        if feed_url:
            candidates.append((app, feed_url))
        elif require_framework:
            logger.debug("%s bundles Sparkle but declares no feed", app.app_name)
    return candidates
