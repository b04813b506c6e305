"""Homebrew package discovery, outdated detection and upgrades."""

import asyncio
import json
import logging
import platform
import re
from pathlib import Path

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import CommandFailed, HomebrewError, LookupDecodeError
from .models import InstalledPackage, OutdatedPackageInfo
from .process import CommandResult, run_command
from .versioning import strip_brew_revision_suffix

logger = logging.getLogger(__name__)

API_BASE = "https://formulae.brew.sh/api"

_NAME_RE = re.compile(r'name "([^"]+)"')
_DESC_RE = re.compile(r'desc "([^"]+)"')
_APP_RE = re.compile(r'app "([^"]+\.app)"')
_AUTO_UPDATES_RE = re.compile(r"auto_updates\s+true")
_VERSION_RE = re.compile(r'version "([^"]+)"')


def default_brew_prefix() -> str:
    return "/opt/homebrew" if platform.machine() == "arm64" else "/usr/local"


class CaskApiResponse(BaseModel):
    version: str


class FormulaVersions(BaseModel):
    stable: str


class FormulaApiResponse(BaseModel):
    versions: FormulaVersions


class CliOutdatedEntry(BaseModel):
    name: str
    installed_versions: list[str]
    current_version: str


class CliOutdatedReport(BaseModel):
    formulae: list[CliOutdatedEntry] = Field(default_factory=list)
    casks: list[CliOutdatedEntry] = Field(default_factory=list)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return None


def _read_json(path: Path) -> dict | None:
    text = _read_text(path)
    if text is None:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class HomebrewController:
    """Reads the Homebrew prefix directly and talks to the formulae API."""

    def __init__(
        self,
        prefix: str | None = None,
        timeout: float = 30.0,
        max_concurrency: int = 8,
    ):
        """Initialize the controller.

        Args:
            prefix: Homebrew prefix; detected from the CPU architecture if omitted
            timeout: Request timeout in seconds
            max_concurrency: Maximum concurrent API requests
        """
        self.prefix = Path(prefix or default_brew_prefix())
        self.timeout = timeout
        self.max_concurrency = max_concurrency

    @property
    def brew_path(self) -> Path:
        return self.prefix / "bin" / "brew"

    async def run_brew(self, *args: str) -> CommandResult:
        if not self.brew_path.exists():
            raise HomebrewError(f"brew not found at {self.brew_path}")
        return await run_command(str(self.brew_path), *args)

    # Installed packages

    def scan_installed_packages(self) -> tuple[list[InstalledPackage], list[InstalledPackage]]:
        """Scan Cellar and Caskroom.

        Returns:
            (formulae, casks)
        """
        formulae = self._scan_dir(self.prefix / "Cellar", self._load_formula)
        casks = self._scan_dir(self.prefix / "Caskroom", self._load_cask)
        logger.info("Scanned Homebrew: %d formulae, %d casks", len(formulae), len(casks))
        return formulae, casks

    def _scan_dir(self, base: Path, loader) -> list[InstalledPackage]:
        if not base.is_dir():
            return []
        packages = []
        for entry in sorted(base.iterdir()):
            if entry.name.startswith("."):
                continue
            package = loader(entry.name)
            if package:
                packages.append(package)
        return packages

    def _latest_cellar_version_dir(self, name: str) -> Path | None:
        cellar = self.prefix / "Cellar" / name
        try:
            versions = sorted(p.name for p in cellar.iterdir() if not p.name.startswith("."))
        except OSError:
            return None
        return cellar / versions[-1] if versions else None

    def _load_formula(self, name: str) -> InstalledPackage | None:
        version_dir = self._latest_cellar_version_dir(name)
        if version_dir is None:
            return None

        desc = None
        rb = _read_text(version_dir / ".brew" / f"{name}.rb")
        if rb and (match := _DESC_RE.search(rb)):
            desc = match.group(1)

        receipt = _read_json(version_dir / "INSTALL_RECEIPT.json") or {}
        source = receipt.get("source") or {}
        return InstalledPackage(
            name=name,
            version=strip_brew_revision_suffix(version_dir.name),
            is_cask=False,
            description=desc,
            is_pinned=(self.prefix / "var" / "homebrew" / "pinned" / name).exists(),
            tap=source.get("tap"),
            installed_on_request=bool(receipt.get("installed_on_request", True)),
            tap_ruby_path=source.get("path"),
        )

    def _load_cask(self, token: str) -> InstalledPackage | None:
        caskroom = self.prefix / "Caskroom" / token
        if caskroom.is_symlink():
            return None

        matches = sorted((caskroom / ".metadata").glob(f"*/*/Casks/{token}.*"))
        if not matches:
            return None
        cask_file = next((m for m in matches if m.suffix == ".json"), matches[0])

        parts = cask_file.parts
        meta_index = len(parts) - 1 - parts[::-1].index(".metadata")
        version = strip_brew_revision_suffix(parts[meta_index + 1])

        package = InstalledPackage(name=token, version=version, is_cask=True)
        if cask_file.suffix == ".json":
            self._apply_cask_json(package, _read_json(cask_file) or {})
        else:
            self._apply_cask_ruby(package, _read_text(cask_file) or "")
        return package

    @staticmethod
    def _apply_cask_json(package: InstalledPackage, data: dict) -> None:
        names = data.get("name") or []
        package.display_name = names[0] if names else None
        package.description = data.get("desc")
        package.auto_updates = bool(data.get("auto_updates"))
        package.tap = data.get("tap")
        for artifact in data.get("artifacts") or []:
            if isinstance(artifact, dict) and "app" in artifact:
                package.artifacts.extend(a for a in artifact["app"] if isinstance(a, str))

    @staticmethod
    def _apply_cask_ruby(package: InstalledPackage, text: str) -> None:
        if match := _NAME_RE.search(text):
            package.display_name = match.group(1)
        if match := _DESC_RE.search(text):
            package.description = match.group(1)
        package.artifacts = _APP_RE.findall(text)
        package.auto_updates = bool(_AUTO_UPDATES_RE.search(text))

    @staticmethod
    def cask_token_map(casks: list[InstalledPackage]) -> dict[str, InstalledPackage]:
        """Map installed .app bundle names to the cask that installed them."""
        mapping = {}
        for cask in casks:
            for artifact in cask.artifacts:
                mapping[Path(artifact).name] = cask
        return mapping

    # Outdated detection

    async def get_outdated_hybrid(
        self, formulae: list[InstalledPackage], casks: list[InstalledPackage]
    ) -> list[OutdatedPackageInfo]:
        """Outdated check via the formulae API, with a tap .rb fallback.

        Args:
            formulae: Installed formulae
            casks: Installed casks

        Returns:
            Packages whose latest version differs from the installed one
        """
        packages = formulae + casks
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def lookup(package: InstalledPackage) -> str | None:
            async with semaphore:
                try:
                    return await self._fetch_api_version(client, package)
                except Exception as e:
                    logger.debug("API lookup failed for %s: %s", package.name, e)
                    return None

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            latest = await asyncio.gather(*(lookup(p) for p in packages))

        outdated: list[OutdatedPackageInfo] = []
        api_failed: list[InstalledPackage] = []
        for package, latest_version in zip(packages, latest):
            if latest_version is None:
                api_failed.append(package)
            elif package.version != latest_version:
                logger.debug("Update available: %s %s -> %s", package.name, package.version, latest_version)
                outdated.append(self._outdated(package, latest_version))

        if api_failed:
            logger.debug("Checking %d packages against their tap", len(api_failed))
            outdated.extend(self._check_tap_packages(api_failed))
        logger.info("Found %d outdated Homebrew packages", len(outdated))
        return outdated

    async def _fetch_api_version(
        self, client: httpx.AsyncClient, package: InstalledPackage
    ) -> str | None:
        """Fetch the latest version of a package from formulae.brew.sh.

        Returns:
            Version string, or None if the package is not in the public API
        """
        kind = "cask" if package.is_cask else "formula"
        url = f"{API_BASE}/{kind}/{package.name}.json"
        response = await client.get(url)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()

        try:
            if package.is_cask:
                return CaskApiResponse.model_validate(data).version
            return FormulaApiResponse.model_validate(data).versions.stable
        except ValidationError as e:
            raise LookupDecodeError(f"Unexpected API response for {package.name}: {e}") from e

    def _check_tap_packages(self, packages: list[InstalledPackage]) -> list[OutdatedPackageInfo]:
        outdated = []
        for package in packages:
            rb_path = package.tap_ruby_path or self._receipt_ruby_path(package)
            if not rb_path:
                logger.debug("No tap file for %s", package.name)
                continue
            text = _read_text(Path(rb_path))
            match = _VERSION_RE.search(text or "")
            if not match:
                continue
            tap_version = strip_brew_revision_suffix(match.group(1))
            if package.version != tap_version:
                outdated.append(self._outdated(package, tap_version))
        return outdated

    def _receipt_ruby_path(self, package: InstalledPackage) -> str | None:
        if package.is_cask:
            receipt_path = self.prefix / "Caskroom" / package.name / ".metadata" / "INSTALL_RECEIPT.json"
        else:
            version_dir = self._latest_cellar_version_dir(package.name)
            if version_dir is None:
                return None
            receipt_path = version_dir / "INSTALL_RECEIPT.json"
        receipt = _read_json(receipt_path) or {}
        return (receipt.get("source") or {}).get("path")

    @staticmethod
    def _outdated(package: InstalledPackage, available: str) -> OutdatedPackageInfo:
        return OutdatedPackageInfo(
            name=package.name,
            installed_version=package.version,
            available_version=available,
            is_cask=package.is_cask,
        )

    async def get_outdated_cli(self) -> list[OutdatedPackageInfo]:
        """Authoritative outdated list from ``brew outdated --json=v2``."""
        result = await self.run_brew("outdated", "--json=v2")
        if not result.ok:
            raise CommandFailed(result.output, "brew outdated")
        try:
            report = CliOutdatedReport.model_validate_json(result.stdout)
        except ValidationError as e:
            raise LookupDecodeError(f"Unexpected brew outdated output: {e}") from e

        outdated = []
        for is_cask, entries in ((False, report.formulae), (True, report.casks)):
            for entry in entries:
                installed = entry.installed_versions[-1] if entry.installed_versions else ""
                outdated.append(OutdatedPackageInfo(
                    name=entry.name,
                    installed_version=strip_brew_revision_suffix(installed),
                    available_version=entry.current_version,
                    is_cask=is_cask,
                ))
        return outdated

    # Mutations

    async def upgrade_package(self, name: str, cask: bool = False) -> None:
        args = ["upgrade", "--cask", name] if cask else ["upgrade", name]
        result = await self.run_brew(*args)
        if "Error" in result.stderr:
            raise CommandFailed(result.stderr, f"brew {' '.join(args)}")
        logger.info("Upgraded %s", name)

    async def adopt_cask(self, token: str) -> None:
        """Bring an existing app under Homebrew management without reinstalling it."""
        result = await self.run_brew("install", "--cask", "--adopt", token)
        if not result.ok or "Error" in result.stderr:
            raise CommandFailed(result.output, f"brew install --cask --adopt {token}")
