"""Homebrew update checks for installed apps."""

import asyncio
import logging

from .brew_controller import HomebrewController
from .config import HomebrewSettings
from .models import InstalledApp, InstalledPackage, OutdatedPackageInfo, UpdateableApp, UpdateSource
from .versioning import clean_brew_version_for_display, is_brew_version_newer

logger = logging.getLogger(__name__)


def attach_cask_tokens(apps: list[InstalledApp], casks: list[InstalledPackage]) -> None:
    """Record the installing cask on every app that one of ``casks`` put on disk."""
    by_bundle = HomebrewController.cask_token_map(casks)
    for app in apps:
        cask = by_bundle.get(app.path.name)
        if cask:
            app.cask = cask.name
            app.auto_updates = cask.auto_updates


class HomebrewChecker:
    """Finds apps whose cask has a newer version available."""

    def __init__(self, controller: HomebrewController, settings: HomebrewSettings | None = None):
        self.controller = controller
        self.settings = settings or HomebrewSettings()

    async def check_for_updates(self, apps: list[InstalledApp]) -> list[UpdateableApp]:
        brew_apps = [app for app in apps if app.cask]
        if not self.settings.show_auto_updates:
            # Self-updating casks are left to their own updater.
            brew_apps = [app for app in brew_apps if not app.auto_updates]
        if not brew_apps and not self.settings.include_formulae:
            return []

        try:
            outdated = await self._outdated_packages()
        except Exception as e:
            logger.warning("Homebrew outdated check failed: %s", e)
            return []

        updates = self._match_casks(brew_apps, outdated)
        if self.settings.include_formulae:
            represented = {app.cask for app in brew_apps}
            updates.extend(
                self._formula_update(info)
                for info in outdated
                if not info.is_cask and info.name not in represented
            )
        logger.info("Homebrew: %d updates", len(updates))
        return updates

    async def _outdated_packages(self) -> list[OutdatedPackageInfo]:
        if self.settings.outdated_strategy == "cli":
            return await self.controller.get_outdated_cli()
        formulae, casks = await asyncio.to_thread(self.controller.scan_installed_packages)
        if not self.settings.include_formulae:
            formulae = []
        return await self.controller.get_outdated_hybrid(formulae, casks)

    def _match_casks(
        self, apps: list[InstalledApp], outdated: list[OutdatedPackageInfo]
    ) -> list[UpdateableApp]:
        outdated_casks = {info.name: info for info in outdated if info.is_cask}
        updates = []
        for app in apps:
            info = outdated_casks.get(app.cask)
            if info is None:
                continue
            # The bundle on disk is the ground truth, not Homebrew's record.
            installed = app.app_version or info.installed_version
            if not is_brew_version_newer(installed, info.available_version):
                logger.debug(
                    "Skipping %s: installed %s is not older than %s",
                    app.app_name, installed, info.available_version,
                )
                continue
            updates.append(UpdateableApp(
                app=app,
                source=UpdateSource.HOMEBREW,
                available_version=clean_brew_version_for_display(info.available_version),
                cask_token=app.cask,
            ))
        return updates

    def _formula_update(self, info: OutdatedPackageInfo) -> UpdateableApp:
        app = InstalledApp(
            path=self.controller.prefix / "Cellar" / info.name,
            app_name=info.name,
            bundle_identifier=f"homebrew.formula.{info.name}",
            app_version=info.installed_version,
        )
        return UpdateableApp(
            app=app,
            source=UpdateSource.HOMEBREW,
            available_version=clean_brew_version_for_display(info.available_version),
            cask_token=info.name,
            is_formula=True,
        )
