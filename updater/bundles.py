"""Reading installed application bundles."""

import logging
import plistlib
from pathlib import Path

from .models import InstalledApp

logger = logging.getLogger(__name__)


def read_plist(path: Path) -> dict | None:
    """Load a property list, returning None when missing or malformed."""
    try:
        with open(path, "rb") as f:
            data = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as e:
        logger.debug("Cannot read plist %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def outer_wrapper(path: Path) -> Path:
    """Return the outer wrapper of an iOS app given either it or the inner .app."""
    path = Path(path)
    if (path / "Wrapper").is_dir():
        return path
    return path.parent.parent


def is_ios_app(path: Path) -> bool:
    path = Path(path)
    return (path / "WrappedBundle").exists() or (path / "Wrapper").is_dir()


def inner_app_bundle(wrapper: Path) -> Path | None:
    """First .app inside a wrapper's ``Wrapper`` directory."""
    try:
        return next(iter(sorted((Path(wrapper) / "Wrapper").glob("*.app"))), None)
    except OSError:
        return None


def is_app_store_app(path: Path) -> bool:
    """True when the bundle carries a store receipt or iTunes metadata."""
    path = Path(path)
    if (path / "Contents" / "_MASReceipt" / "receipt").exists():
        return True
    return (outer_wrapper(path) / "Wrapper" / "iTunesMetadata.plist").exists()


def info_plist_path(path: Path) -> Path | None:
    path = Path(path)
    if is_ios_app(path):
        inner = inner_app_bundle(path)
        return inner / "Info.plist" if inner else None
    return path / "Contents" / "Info.plist"


def load_installed_app(path: Path) -> InstalledApp | None:
    """Build an InstalledApp from a bundle's Info.plist.

    Args:
        path: Path to the .app bundle (or iOS outer wrapper)

    Returns:
        InstalledApp, or None if the bundle has no identifier
    """
    path = Path(path)
    plist_path = info_plist_path(path)
    info = read_plist(plist_path) if plist_path else None
    if not info or not info.get("CFBundleIdentifier"):
        return None

    name = info.get("CFBundleDisplayName") or info.get("CFBundleName") or path.stem
    return InstalledApp(
        path=path,
        app_name=str(name),
        bundle_identifier=str(info["CFBundleIdentifier"]),
        app_version=_as_str(info.get("CFBundleShortVersionString")),
        app_build_number=_as_str(info.get("CFBundleVersion")),
        is_wrapped=is_ios_app(path),
    )


def _as_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def scan_applications(folders: list[str | Path]) -> list[InstalledApp]:
    """Enumerate top-level .app bundles in the given folders."""
    apps = []
    for folder in folders:
        folder = Path(folder).expanduser()
        if not folder.is_dir():
            continue
        try:
            entries = sorted(folder.iterdir())
        except OSError as e:
            logger.warning("Cannot list %s: %s", folder, e)
            continue
        for entry in entries:
            if entry.suffix != ".app" or not entry.is_dir():
                continue
            app = load_installed_app(entry)
            if app:
                apps.append(app)
    logger.info("Found %d applications", len(apps))
    return apps


def read_bundle_version_directly(path: Path) -> tuple[str | None, str | None]:
    """Read (short version, build) straight from disk, bypassing any cache."""
    path = Path(path)
    if is_ios_app(path):
        metadata = read_plist(path / "Wrapper" / "iTunesMetadata.plist") or {}
        return (
            _as_str(metadata.get("bundleShortVersionString")),
            _as_str(metadata.get("bundleVersion")),
        )
    info = read_plist(path / "Contents" / "Info.plist") or {}
    return (
        _as_str(info.get("CFBundleShortVersionString")),
        _as_str(info.get("CFBundleVersion")),
    )
