"""Callback protocol for Sparkle-style updates and the engine that drives it.

The engine fetches an app's appcast, asks its delegate which item is the best
valid update and then walks a user driver through the rest of the update:
found, download, extraction, ready-to-install, installing and installed. The
driver decides at the "found" and "ready" steps whether to continue, so the
same engine serves check-only passes and unattended installs.
"""

import asyncio
import functools
import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import httpx

from .errors import SparkleUpdateError
from .models import InstalledApp, SparkleMetadata
from .process import run_command
from .sparkle_feed import current_os_version, is_default_channel, meets_minimum_os, parse_appcast
from .versioning import Version

logger = logging.getLogger(__name__)


class UpdateChoice(Enum):
    INSTALL = "install"
    DISMISS = "dismiss"
    SKIP = "skip"


class NoUpdateReason(Enum):
    UNKNOWN = "unknown"
    ON_LATEST_VERSION = "on latest version"
    ON_NEWER_THAN_LATEST = "on newer than latest version"
    SYSTEM_IS_TOO_OLD = "system is too old"


@dataclass
class PermissionReply:
    automatic_update_checks: bool
    send_system_profile: bool = False


class UpdaterDelegate(Protocol):
    def allowed_channels(self) -> set[str]:
        ...

    def best_valid_update(self, items: list[SparkleMetadata]) -> SparkleMetadata | None:
        ...


class UserDriver(Protocol):
    def request_permission(self) -> PermissionReply:
        ...

    def show_update_found(self, item: SparkleMetadata) -> UpdateChoice:
        ...

    def show_update_not_found(self, reason: NoUpdateReason, latest_item: SparkleMetadata | None) -> None:
        ...

    def show_updater_error(self, error: Exception) -> None:
        ...

    def show_download_initiated(self) -> None:
        ...

    def show_download_expected_length(self, length: int) -> None:
        ...

    def show_download_received_data(self, length: int) -> None:
        ...

    def show_extraction_started(self) -> None:
        ...

    def show_extraction_progress(self, progress: float) -> None:
        ...

    def show_ready_to_install(self) -> UpdateChoice:
        ...

    def show_installing_update(self) -> None:
        ...

    def show_update_installed(self) -> None:
        ...

    def dismiss(self) -> None:
        ...


class HeadlessUserDriver:
    """User driver with no UI. Subclasses override the callbacks they need."""

    def request_permission(self) -> PermissionReply:
        return PermissionReply(automatic_update_checks=False)

    def show_update_found(self, item: SparkleMetadata) -> UpdateChoice:
        return UpdateChoice.DISMISS

    def show_update_not_found(self, reason: NoUpdateReason, latest_item: SparkleMetadata | None) -> None:
        pass

    def show_updater_error(self, error: Exception) -> None:
        pass

    def show_download_initiated(self) -> None:
        pass

    def show_download_expected_length(self, length: int) -> None:
        pass

    def show_download_received_data(self, length: int) -> None:
        pass

    def show_extraction_started(self) -> None:
        pass

    def show_extraction_progress(self, progress: float) -> None:
        pass

    def show_ready_to_install(self) -> UpdateChoice:
        return UpdateChoice.INSTALL

    def show_installing_update(self) -> None:
        pass

    def show_update_installed(self) -> None:
        pass

    def dismiss(self) -> None:
        pass


def _compare_display(first: SparkleMetadata, second: SparkleMetadata) -> int:
    v1, v2 = Version(first.display_version), Version(second.display_version)
    if v1 < v2:
        return -1
    if v1 > v2:
        return 1
    return 0


def newest_first(items: list[SparkleMetadata]) -> list[SparkleMetadata]:
    """Items sorted by display version, newest first."""
    return sorted(items, key=functools.cmp_to_key(_compare_display), reverse=True)


class AppcastUpdateEngine:
    """Runs one update session for one app."""

    def __init__(
        self,
        app: InstalledApp,
        feed_url: str,
        user_driver: UserDriver,
        delegate: UpdaterDelegate,
        timeout: float = 30.0,
        os_version: tuple[int, int, int] | None = None,
    ):
        self.app = app
        self.feed_url = feed_url
        self.user_driver = user_driver
        self.delegate = delegate
        self.timeout = timeout
        self.os_version = os_version or current_os_version()

    async def run(self) -> None:
        """Run the session; every failure is reported through ``show_updater_error``."""
        try:
            await self._run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Update session for %s failed: %s", self.app.bundle_identifier, e)
            self.user_driver.show_updater_error(e)
        finally:
            self.user_driver.dismiss()

    async def _run(self) -> None:
        self.user_driver.request_permission()

        items = parse_appcast(await self._fetch_appcast())
        allowed = self.delegate.allowed_channels()
        items = [i for i in items if is_default_channel(i.channel) or i.channel in allowed]

        best = self.delegate.best_valid_update(items)
        if best is None:
            latest = newest_first(items)[0] if items else None
            self.user_driver.show_update_not_found(self._no_update_reason(latest), latest)
            return

        if self.user_driver.show_update_found(best) is not UpdateChoice.INSTALL:
            return

        workdir = Path(tempfile.mkdtemp(prefix="appupdater-sparkle-"))
        try:
            archive = await self._download(best, workdir)
            new_bundle = await self._extract(archive, workdir / "extracted")
            if self.user_driver.show_ready_to_install() is not UpdateChoice.INSTALL:
                return
            self.user_driver.show_installing_update()
            await asyncio.to_thread(self._replace_bundle, new_bundle)
            logger.info("Installed %s %s", self.app.app_name, best.display_version)
            self.user_driver.show_update_installed()
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _no_update_reason(self, latest: SparkleMetadata | None) -> NoUpdateReason:
        if latest is None:
            return NoUpdateReason.UNKNOWN
        if not meets_minimum_os(latest.minimum_system_version, self.os_version):
            return NoUpdateReason.SYSTEM_IS_TOO_OLD
        if Version(latest.display_version) < Version(self.app.app_version or self.app.app_build_number):
            return NoUpdateReason.ON_NEWER_THAN_LATEST
        return NoUpdateReason.ON_LATEST_VERSION

    async def _fetch_appcast(self) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(self.feed_url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise SparkleUpdateError(f"Failed to fetch appcast {self.feed_url}: {e}") from e

    async def _download(self, item: SparkleMetadata, workdir: Path) -> Path:
        if not item.enclosure_url:
            raise SparkleUpdateError(f"Appcast item {item.display_version} has no enclosure")
        name = Path(httpx.URL(item.enclosure_url).path).name or "update.zip"
        destination = workdir / name

        self.user_driver.show_download_initiated()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                async with client.stream("GET", item.enclosure_url) as response:
                    response.raise_for_status()
                    length = int(response.headers.get("content-length") or item.enclosure_length or 0)
                    self.user_driver.show_download_expected_length(length)
                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                            self.user_driver.show_download_received_data(len(chunk))
        except httpx.HTTPError as e:
            raise SparkleUpdateError(f"Download failed: {e}") from e
        return destination

    async def _extract(self, archive: Path, destination: Path) -> Path:
        """Unpack a zip, disk image or tarball and return the app bundle inside.

        Raises:
            SparkleUpdateError: The archive could not be unpacked or holds no app
        """
        self.user_driver.show_extraction_started()
        destination.mkdir(parents=True)
        suffix = archive.name.lower()

        if suffix.endswith(".dmg"):
            await self._copy_from_disk_image(archive, destination)
        else:
            if suffix.endswith(".zip"):
                result = await run_command("/usr/bin/ditto", "-x", "-k", str(archive), str(destination))
            else:
                result = await run_command("/usr/bin/tar", "-xf", str(archive), "-C", str(destination))
            if not result.ok:
                raise SparkleUpdateError(f"Extraction failed: {result.output.strip()}")
        self.user_driver.show_extraction_progress(1.0)

        bundles = sorted(destination.rglob("*.app"))
        for bundle in bundles:
            if bundle.name == self.app.path.name:
                return bundle
        if bundles:
            return bundles[0]
        raise SparkleUpdateError(f"No application found in {archive.name}")

    async def _copy_from_disk_image(self, image: Path, destination: Path) -> None:
        mountpoint = destination.parent / f"mount-{uuid.uuid4().hex[:8]}"
        attach = await run_command(
            "/usr/bin/hdiutil", "attach", str(image), "-nobrowse", "-readonly", "-mountpoint", str(mountpoint)
        )
        if not attach.ok:
            raise SparkleUpdateError(f"Cannot mount disk image: {attach.output.strip()}")
        try:
            self.user_driver.show_extraction_progress(0.5)
            for bundle in sorted(mountpoint.glob("*.app")):
                copied = await run_command("/usr/bin/ditto", str(bundle), str(destination / bundle.name))
                if not copied.ok:
                    raise SparkleUpdateError(f"Copy from disk image failed: {copied.output.strip()}")
        finally:
            await run_command("/usr/bin/hdiutil", "detach", str(mountpoint), "-quiet")

    def _replace_bundle(self, new_bundle: Path) -> None:
        target = Path(self.app.path)
        backup = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.old")
        shutil.move(str(target), str(backup))
        try:
            shutil.move(str(new_bundle), str(target))
        except OSError:
            shutil.move(str(backup), str(target))
            raise
        shutil.rmtree(backup, ignore_errors=True)
