"""Core data models for the updater."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .versioning import Version


class UpdateSource(str, Enum):
    """Channel through which an update is delivered."""

    HOMEBREW = "Homebrew"
    APP_STORE = "App Store"
    SPARKLE = "Sparkle"


# Deduplication priority, highest first.
SOURCE_PRIORITY = (UpdateSource.HOMEBREW, UpdateSource.APP_STORE, UpdateSource.SPARKLE)


class UpdateStatus(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class InstalledApp:
    """An application bundle found on disk."""

    path: Path
    app_name: str
    bundle_identifier: str
    app_version: str | None = None
    app_build_number: str | None = None
    cask: str | None = None
    auto_updates: bool = False
    is_wrapped: bool = False

    @property
    def version(self) -> Version:
        return Version(self.app_version, self.app_build_number)


@dataclass
class SparkleMetadata:
    """A single appcast item."""

    build_version: str
    short_version: str | None = None
    channel: str | None = None
    minimum_system_version: str | None = None
    title: str | None = None
    description: str | None = None
    release_notes_link: str | None = None
    pub_date: str | None = None
    enclosure_url: str | None = None
    enclosure_length: int | None = None

    @property
    def display_version(self) -> str:
        return self.short_version or self.build_version

    @property
    def version(self) -> Version:
        return Version(self.short_version, self.build_version)


@dataclass
class UpdateableApp:
    """One actionable update opportunity for an installed app."""

    app: InstalledApp
    source: UpdateSource
    available_version: str | None = None
    available_build_number: str | None = None
    cask_token: str | None = None
    is_formula: bool = False
    app_store_id: int | None = None
    app_store_url: str | None = None
    found_in_region: str | None = None
    release_title: str | None = None
    release_description: str | None = None
    release_notes_link: str | None = None
    release_date: str | None = None
    is_pre_release: bool = False
    is_ios_app: bool = False
    is_selected_for_update: bool = True
    status: UpdateStatus = UpdateStatus.IDLE
    status_message: str | None = None
    progress: float = 0.0
    appcast_item: SparkleMetadata | None = None

    @property
    def id(self) -> str:
        return self.app.bundle_identifier

    @property
    def unique_identifier(self) -> str:
        return f"{self.app.bundle_identifier}:{self.source.value}"

    @property
    def can_update(self) -> bool:
        return self.source in (UpdateSource.HOMEBREW, UpdateSource.APP_STORE)

    def set_status(self, status: UpdateStatus, progress: float | None = None) -> None:
        self.status = status
        self.status_message = None
        if progress is not None:
            self.progress = progress

    def mark_failed(self, message: str) -> None:
        self.status = UpdateStatus.FAILED
        self.status_message = message
        self.progress = 0.0


@dataclass
class InstalledPackage:
    """A Homebrew cask or formula found by scanning the prefix."""

    name: str
    version: str
    is_cask: bool
    display_name: str | None = None
    description: str | None = None
    is_pinned: bool = False
    tap: str | None = None
    installed_on_request: bool = True
    auto_updates: bool = False
    artifacts: list[str] = field(default_factory=list)
    tap_ruby_path: str | None = None


@dataclass
class OutdatedPackageInfo:
    name: str
    installed_version: str
    available_version: str
    is_cask: bool


@dataclass
class AdoptableCask:
    """A cask that probably packages an app installed outside Homebrew."""

    token: str
    display_name: str
    description: str | None
    version: str
    auto_updates: bool
    homepage: str | None
    is_version_compatible: bool
    match_score: int


def _now() -> datetime:
    return datetime.now()


@dataclass
class ScheduleOccurrence:
    """A weekly slot for unattended Homebrew maintenance."""

    weekday: int = field(default_factory=lambda: _now().isoweekday() % 7)
    hour: int = field(default_factory=lambda: _now().hour)
    minute: int = field(default_factory=lambda: _now().minute)
    is_enabled: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not 0 <= self.weekday <= 6:
            raise ValueError(f"weekday must be 0-6, got {self.weekday}")
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour must be 0-23, got {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"minute must be 0-59, got {self.minute}")
