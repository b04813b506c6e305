"""User settings and the JSON file that persists them."""

import json
import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV = "APPUPDATER_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "appupdater" / "settings.json"


class HomebrewSettings(BaseModel):
    enabled: bool = True
    show_auto_updates: bool = True
    include_formulae: bool = False
    outdated_strategy: Literal["hybrid", "cli"] = "hybrid"
    brew_prefix: str | None = None


class SparkleSettings(BaseModel):
    enabled: bool = True
    include_pre_releases: bool = False
    use_in_process_driver: bool = False
    lightweight_detection: bool = False


class AppStoreSettings(BaseModel):
    enabled: bool = True
    region: str | None = None
    detector_timeout: float = 10.0


class WebSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False


class UpdaterSettings(BaseModel):
    """Settings for every update source."""

    homebrew: HomebrewSettings = Field(default_factory=HomebrewSettings)
    sparkle: SparkleSettings = Field(default_factory=SparkleSettings)
    app_store: AppStoreSettings = Field(default_factory=AppStoreSettings)
    web: WebSettings = Field(default_factory=WebSettings)
    app_folders: list[str] = Field(
        default_factory=lambda: ["/Applications", str(Path.home() / "Applications")]
    )
    request_timeout: float = 30.0


class SettingsStore:
    """Key-value settings provider backed by a JSON file."""

    def __init__(self, path: Path | str | None = None):
        """Initialize the store.

        Args:
            path: Settings file; defaults to $APPUPDATER_CONFIG or
                ~/.config/appupdater/settings.json
        """
        if path is None:
            path = os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH
        self.path = Path(path)
        self._data: dict = self._read()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._data, indent=2, sort_keys=True))

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value) -> None:
        self._data[key] = value
        self._write()

    def load_settings(self) -> UpdaterSettings:
        """Return stored settings, falling back to defaults when invalid."""
        try:
            return UpdaterSettings.model_validate(self.get("settings", {}))
        except ValidationError as e:
            logger.warning("Invalid settings in %s, using defaults: %s", self.path, e)
            return UpdaterSettings()

    def save_settings(self, settings: UpdaterSettings) -> None:
        self.set("settings", settings.model_dump())

    def hidden_updates(self) -> dict[str, str]:
        """Map of update unique identifiers to the source they were hidden from."""
        hidden = self.get("hidden_updates", {})
        return dict(hidden) if isinstance(hidden, dict) else {}

    def save_hidden_updates(self, hidden: dict[str, str]) -> None:
        self.set("hidden_updates", hidden)
