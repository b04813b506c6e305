"""Replacing a sideloaded iOS app with a newer build from an .ipa archive.

The new wrapper is assembled completely in a temporary directory before the
live installation is touched. The swap itself runs as one privileged shell
sequence; if it fails, the previous wrapper is moved back.
"""

import logging
import plistlib
import shlex
import shutil
import tempfile
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .appstore_checker import AppStoreChecker, LookupResult
from .bundles import outer_wrapper
from .errors import (
    ApiLookupFailed,
    AtomicReplacementFailed,
    ExtractionFailed,
    InvalidInfoPlist,
    MetadataEncodingError,
    MissingProtectedMetadata,
    NoAppBundleFound,
    NoExistingInstallation,
    UpdaterError,
)
from .keyed_archive import archive_dict, unarchive_dict
from .privileged import OsascriptPrivilegedRunner, PrivilegedRunner
from .process import run_command

logger = logging.getLogger(__name__)

ITUNES_METADATA = "iTunesMetadata.plist"
BUNDLE_METADATA = "BundleMetadata.plist"
WRAPPED_BUNDLE_LINK = "WrappedBundle"
FALLBACK_BUILD_VERSION = "25B78"

ProgressCallback = Callable[[float, str], None]
Extractor = Callable[[Path, Path], Awaitable[None]]
Lookup = Callable[[int], Awaitable[LookupResult | None]]


@dataclass
class VersionInfo:
    version: str
    build: str
    bundle_id: str


async def ditto_extract(archive: Path, destination: Path) -> None:
    """Unpack an .ipa with ditto, which handles LZFSE-compressed entries."""
    result = await run_command("/usr/bin/ditto", "-x", "-k", str(archive), str(destination))
    if not result.ok:
        raise ExtractionFailed(result.stderr.strip() or f"ditto exited with status {result.returncode}")


async def install_build_version() -> str:
    """Build version of the running OS, as recorded by the system installer."""
    try:
        result = await run_command("/usr/bin/sw_vers", "-buildVersion")
    except OSError:
        return FALLBACK_BUILD_VERSION
    build = result.stdout.strip()
    return build if result.ok and build else FALLBACK_BUILD_VERSION


def find_wrapped_bundle(payload: Path) -> Path:
    """First .app inside the extracted Payload directory."""
    try:
        bundles = sorted(p for p in payload.iterdir() if p.suffix == ".app")
    except OSError:
        bundles = []
    if not bundles:
        raise NoAppBundleFound()
    return bundles[0]


def read_version_info(app_bundle: Path) -> VersionInfo:
    plist_path = app_bundle / "Info.plist"
    try:
        with open(plist_path, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as e:
        raise InvalidInfoPlist(plist_path) from e

    values = [info.get(key) if isinstance(info, dict) else None
              for key in ("CFBundleShortVersionString", "CFBundleVersion", "CFBundleIdentifier")]
    if not all(isinstance(v, str) and v for v in values):
        raise InvalidInfoPlist(plist_path)
    return VersionInfo(*values)


def preserve_metadata(wrapper: Path) -> dict:
    """Load the installation's complete iTunes metadata.

    Raises:
        NoExistingInstallation: The wrapper has no metadata file
        MissingProtectedMetadata: The metadata lacks the protected blob
    """
    metadata_path = wrapper / "Wrapper" / ITUNES_METADATA
    if not metadata_path.is_file():
        raise NoExistingInstallation(wrapper)
    try:
        with open(metadata_path, "rb") as f:
            metadata = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as e:
        raise InvalidInfoPlist(metadata_path) from e
    if not isinstance(metadata, dict):
        raise InvalidInfoPlist(metadata_path)
    if not isinstance(metadata.get("protectedMetadata"), bytes):
        raise MissingProtectedMetadata()
    return metadata


def merge_metadata(preserved: dict, version: VersionInfo, listing: LookupResult | None = None) -> dict:
    """Copy of the preserved metadata with version fields replaced.

    Title and artist are refreshed from the store listing when it has them.
    Every other key, softwareVersionExternalIdentifier included, is kept.
    """
    merged = dict(preserved)
    if listing is not None:
        if listing.trackName:
            merged["itemName"] = listing.trackName
        if listing.artistName:
            merged["artistName"] = listing.artistName
    merged["bundleShortVersionString"] = version.version
    merged["bundleVersion"] = version.build
    return merged


def bundle_metadata(build_version: str, install_date: datetime | None = None) -> dict:
    return {
        "installDate": install_date or datetime.now(timezone.utc),
        "installBuildVersion": build_version,
        "installType": 0,
        "autoInstallOverride": 0,
    }


def build_swap_script(wrapper: Path, new_wrapper: Path, backup: Path, bundle_name: str) -> str:
    """Shell sequence that swaps the live wrapper for the new one.

    Each step runs only if the previous one succeeded, and the backup is
    removed last.
    """
    live = wrapper / "Wrapper"
    link = wrapper / WRAPPED_BUNDLE_LINK
    process_name = bundle_name.removesuffix(".app")
    q = shlex.quote
    steps = [
        f"{{ pkill -x {q(process_name)} || true; }}",
        f"mv {q(str(live))} {q(str(backup))}",
        f"mv {q(str(new_wrapper))} {q(str(live))}",
        f"chown -R root:wheel {q(str(wrapper))}",
        f"chmod -R 755 {q(str(wrapper))}",
        f"rm -f {q(str(link))}",
        f"ln -s {q('Wrapper/' + bundle_name)} {q(str(link))}",
        f"rm -rf {q(str(backup))}",
    ]
    return " && ".join(steps)


class IOSAppInstaller:
    """Installs a new .ipa build over an existing iOS app installation."""

    def __init__(
        self,
        runner: PrivilegedRunner | None = None,
        lookup: Lookup | None = None,
        extractor: Extractor = ditto_extract,
        temp_root: Path | None = None,
    ):
        """Initialize the installer.

        Args:
            runner: Executes the privileged swap script
            lookup: Store metadata lookup by product ID
            extractor: Unpacks the .ipa into a directory
            temp_root: Parent for temporary working directories
        """
        self.runner = runner or OsascriptPrivilegedRunner()
        self.lookup = lookup or AppStoreChecker().lookup_by_id
        self.extractor = extractor
        self.temp_root = temp_root

    async def install(
        self,
        ipa_path: Path,
        adam_id: int,
        existing_app_path: Path,
        on_progress: ProgressCallback | None = None,
    ) -> VersionInfo:
        """Replace the installation at ``existing_app_path`` with ``ipa_path``.

        Args:
            ipa_path: The .ipa archive
            adam_id: Store product ID of the app
            existing_app_path: Outer wrapper or inner .app of the installation
            on_progress: Called with (fraction, status) at each phase

        Returns:
            Version information of the installed build

        Raises:
            IOSInstallError: A step failed; nothing was changed unless the
                error is AtomicReplacementFailed
        """
        report = on_progress or (lambda progress, status: None)
        wrapper = outer_wrapper(Path(existing_app_path))
        logger.info("Installing %s over %s", ipa_path, wrapper)

        workdir = Path(tempfile.mkdtemp(prefix=f"appupdater-ios-{adam_id}-", dir=self.temp_root))
        try:
            report(0.1, "Extracting")
            extracted = workdir / "extracted"
            extracted.mkdir()
            await self.extractor(Path(ipa_path), extracted)

            app_bundle = find_wrapped_bundle(extracted / "Payload")
            version = read_version_info(app_bundle)
            logger.info("New build: %s %s (%s)", version.bundle_id, version.version, version.build)

            report(0.3, "Preserving metadata")
            preserved = preserve_metadata(wrapper)
            listing = await self._lookup(adam_id)
            logger.debug("Store lists %s %s", listing.trackId, listing.version)
            itunes_metadata = merge_metadata(preserved, version, listing)
            build_metadata = bundle_metadata(await install_build_version())

            new_wrapper = self._assemble_wrapper(workdir, app_bundle, itunes_metadata, build_metadata)

            report(0.6, "Installing")
            await self._swap(wrapper, new_wrapper, app_bundle.name)
            report(1.0, "Installed")
            return version
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def _lookup(self, adam_id: int) -> LookupResult:
        try:
            listing = await self.lookup(adam_id)
        except UpdaterError as e:
            raise ApiLookupFailed(adam_id, str(e)) from e
        if listing is None:
            raise ApiLookupFailed(adam_id, "no results")
        return listing

    def _assemble_wrapper(self, workdir: Path, app_bundle: Path, itunes_metadata: dict, build_metadata: dict) -> Path:
        new_wrapper = workdir / "Wrapper"
        new_wrapper.mkdir()
        shutil.move(str(app_bundle), str(new_wrapper / app_bundle.name))

        try:
            itunes_data = plistlib.dumps(itunes_metadata, fmt=plistlib.FMT_XML)
        except (TypeError, OverflowError) as e:
            raise MetadataEncodingError(str(e)) from e
        build_data = archive_dict(build_metadata)
        if set(unarchive_dict(build_data)) != set(build_metadata):
            raise MetadataEncodingError("bundle metadata did not survive encoding")

        (new_wrapper / ITUNES_METADATA).write_bytes(itunes_data)
        (new_wrapper / BUNDLE_METADATA).write_bytes(build_data)

        if not (new_wrapper / app_bundle.name / "Info.plist").is_file():
            raise InvalidInfoPlist(new_wrapper / app_bundle.name / "Info.plist")
        return new_wrapper

    async def _swap(self, wrapper: Path, new_wrapper: Path, bundle_name: str) -> None:
        backup = wrapper / f".Wrapper-backup-{uuid.uuid4().hex[:8]}"
        script = build_swap_script(wrapper, new_wrapper, backup, bundle_name)
        ok, output = await self.runner.run(script)
        if ok:
            logger.info("Replaced %s", wrapper)
            return

        logger.error("Atomic replacement of %s failed: %s", wrapper, output.strip())
        if not backup.exists():
            raise AtomicReplacementFailed(output.strip(), rollback_attempted=False, rollback_succeeded=False)

        live = wrapper / "Wrapper"
        restore = f"rm -rf {shlex.quote(str(live))} && mv {shlex.quote(str(backup))} {shlex.quote(str(live))}"
        restored, restore_output = await self.runner.run(restore)
        if not restored:
            logger.error("Rollback failed, %s is left at %s: %s", live, backup, restore_output.strip())
        raise AtomicReplacementFailed(output.strip(), rollback_attempted=True, rollback_succeeded=restored)
