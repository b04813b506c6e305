"""CLI application for AppUpdater."""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from updater.brew_adoption import find_matching_casks, load_casks, validate_manual_entry
from updater.brew_controller import HomebrewController
from updater.brew_schedule import HomebrewAutoUpdater, Schedule, ScheduleActions
from updater.bundles import load_installed_app
from updater.config import SettingsStore
from updater.ios_installer import IOSAppInstaller
from updater.logging_config import setup_logging
from updater.manager import UpdateManager
from updater.models import ScheduleOccurrence, UpdateableApp, UpdateSource
from updater.privileged import OsascriptPrivilegedRunner, SudoPrivilegedRunner

console = Console()

WEEKDAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]

_SOURCE_ALIASES = {
    "homebrew": UpdateSource.HOMEBREW,
    "brew": UpdateSource.HOMEBREW,
    "appstore": UpdateSource.APP_STORE,
    "app-store": UpdateSource.APP_STORE,
    "mas": UpdateSource.APP_STORE,
    "sparkle": UpdateSource.SPARKLE,
}

state: dict = {"config": None}


def parse_source(text: str) -> UpdateSource:
    """Accept "homebrew", "app-store", "App Store", "sparkle" and friends."""
    key = text.strip().lower().replace(" ", "")
    if key in _SOURCE_ALIASES:
        return _SOURCE_ALIASES[key]
    raise typer.BadParameter(f"Unknown source: {text}")


def update_to_dict(update: UpdateableApp) -> dict:
    return {
        "name": update.app.app_name,
        "bundle_id": update.app.bundle_identifier,
        "path": str(update.app.path),
        "source": update.source.value,
        "installed_version": update.app.app_version,
        "available_version": update.available_version,
        "cask": update.cask_token,
        "app_store_id": update.app_store_id,
        "pre_release": update.is_pre_release,
        "status": update.status.value,
    }


def format_json_output(results: dict[UpdateSource, list[UpdateableApp]]) -> str:
    """Format JSON output keyed by source name."""
    return json.dumps(
        {source.value: [update_to_dict(u) for u in results.get(source, [])] for source in UpdateSource},
        indent=2,
    )


def build_table(source: UpdateSource, updates: list[UpdateableApp]) -> Table:
    table = Table(title=f"{source.value} ({len(updates)})")
    table.add_column("App")
    table.add_column("Installed")
    table.add_column("Available")
    table.add_column("Bundle ID", style="dim")
    for update in updates:
        available = update.available_version or ""
        if update.is_pre_release:
            available += " (pre-release)"
        table.add_row(update.app.app_name, update.app.app_version or "?", available, update.app.bundle_identifier)
    return table


def _settings_store() -> SettingsStore:
    return SettingsStore(state["config"])


async def _scan_and_update(
    manager: UpdateManager, bundle_ids: list[str], source: UpdateSource | None
) -> dict[str, bool]:
    await manager.scan()
    if source:
        return await manager.update_all(source)

    results = {}
    for bundle_id in bundle_ids:
        target = manager.find_update(bundle_id)
        if target is None:
            console.print(f"No update available for {bundle_id}", style="yellow")
            continue
        results[target.unique_identifier] = await manager.update_app(target)
    return results


def _progress_printer(label: str):
    def report(progress: float, status: str) -> None:
        console.print(f"{label}: {status} ({progress:.0%})")
    return report


app = typer.Typer(
    name="appupdater",
    help="AppUpdater - Find and apply updates for Homebrew, App Store and Sparkle apps",
    add_completion=False,
)
schedule_app = typer.Typer(help="Manage the scheduled Homebrew maintenance agent")
app.add_typer(schedule_app, name="schedule")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    config: str | None = typer.Option(None, "--config", help="Settings file"),
) -> None:
    """AppUpdater - Find and apply updates for installed apps."""
    state["config"] = config
    setup_logging("debug" if verbose else "warning", console=Console(stderr=True))


@app.command()
def scan(
    format_type: str = typer.Option("table", "--format", help="Output format: table or json"),
) -> None:
    """Scan installed apps for available updates."""
    try:
        manager = UpdateManager(_settings_store())
        results = asyncio.run(manager.scan())

        if format_type == "json":
            typer.echo(format_json_output(results))
            return

        total = sum(len(updates) for updates in results.values())
        if total == 0:
            console.print("All apps are up to date")
            return
        for source in UpdateSource:
            if results.get(source):
                console.print(build_table(source, results[source]))

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


@app.command()
def update(
    bundle_ids: list[str] | None = typer.Argument(None, help="Bundle identifiers to update"),
    source: str | None = typer.Option(None, "--source", "-s", help="Update everything from one source"),
) -> None:
    """Apply updates for the given apps, or for every app of one source."""
    try:
        if not bundle_ids and not source:
            console.print("Error: Specify bundle identifiers or --source", style="red")
            raise typer.Exit(1)

        manager = UpdateManager(_settings_store())
        selected = parse_source(source) if source else None
        results = asyncio.run(_scan_and_update(manager, bundle_ids or [], selected))

        if not results:
            console.print("Nothing to update")
            return
        for identifier, ok in results.items():
            console.print(f"{identifier}: {'updated' if ok else 'failed'}", style="green" if ok else "red")
        if not all(results.values()):
            raise typer.Exit(1)

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


@app.command()
def adopt(
    app_path: str = typer.Argument(help="Path to the .app bundle"),
    casks_file: str = typer.Option(..., "--casks", help="JSON from 'brew info --json=v2 --eval-all --cask'"),
    token: str | None = typer.Option(None, "--token", help="Validate a specific cask token"),
    install: bool = typer.Option(False, "--install", help="Adopt the best match with Homebrew"),
) -> None:
    """Find Homebrew casks that could manage an app installed by hand."""
    try:
        installed = load_installed_app(Path(app_path))
        if installed is None:
            console.print(f"Error: {app_path} is not an application bundle", style="red")
            raise typer.Exit(1)

        casks = load_casks(Path(casks_file))
        if token:
            match = validate_manual_entry(token, installed, casks)
            if match is None:
                console.print(f"Error: {token} is not an available cask", style="red")
                raise typer.Exit(1)
            matches = [match]
        else:
            matches = find_matching_casks(installed, casks)

        if not matches:
            console.print(f"No casks match {installed.app_name}")
            raise typer.Exit(2)

        table = Table(title=f"Casks for {installed.app_name}")
        for column in ("Token", "Name", "Version", "Score", "Compatible"):
            table.add_column(column)
        for m in matches[:10]:
            table.add_row(m.token, m.display_name, m.version, str(m.match_score), "yes" if m.is_version_compatible else "no")
        console.print(table)

        if install:
            settings = _settings_store().load_settings()
            controller = HomebrewController(settings.homebrew.brew_prefix)
            asyncio.run(controller.adopt_cask(matches[0].token))
            console.print(f"Adopted {installed.app_name} as {matches[0].token}", style="green")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


@app.command("install-ipa")
def install_ipa(
    ipa_path: str = typer.Argument(help="Path to the .ipa archive"),
    app_path: str = typer.Argument(help="Installed app (outer wrapper or inner .app)"),
    adam_id: int = typer.Option(..., "--adam-id", help="App Store product ID"),
    sudo: bool = typer.Option(False, "--sudo", help="Use cached sudo credentials instead of a password prompt"),
) -> None:
    """Replace a sideloaded iOS app with a new build."""
    try:
        if not Path(ipa_path).exists():
            console.print(f"Error: File {ipa_path} not found", style="red")
            raise typer.Exit(1)

        runner = SudoPrivilegedRunner() if sudo else OsascriptPrivilegedRunner()
        installer = IOSAppInstaller(runner=runner)
        version = asyncio.run(
            installer.install(Path(ipa_path), adam_id, Path(app_path), on_progress=_progress_printer("iOS"))
        )
        console.print(f"Installed {version.bundle_id} {version.version} ({version.build})", style="green")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


def _auto_updater() -> HomebrewAutoUpdater:
    settings = _settings_store().load_settings()
    controller = HomebrewController(settings.homebrew.brew_prefix)
    return HomebrewAutoUpdater(str(controller.prefix))


@schedule_app.command("show")
def schedule_show() -> None:
    """Show the current maintenance schedule."""
    try:
        updater = _auto_updater()
        schedule = updater.load_schedule()
        if not schedule.occurrences:
            console.print("No schedule configured")
            return
        status = "enabled" if updater.is_enabled else "disabled"
        console.print(f"Schedule ({status}):")
        for o in schedule.occurrences:
            console.print(f"  {WEEKDAYS[o.weekday]} {o.hour:02d}:{o.minute:02d}")
        actions = [name for name in ("update", "upgrade", "cleanup") if getattr(schedule.actions, name)]
        console.print(f"Actions: {', '.join(actions) or 'none'}")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


@schedule_app.command("apply")
def schedule_apply(
    weekdays: list[int] = typer.Option([], "--weekday", "-d", help="Weekday 0-6 (Sunday is 0); repeatable"),
    hour: int = typer.Option(9, "--hour", help="Hour 0-23"),
    minute: int = typer.Option(0, "--minute", help="Minute 0-59"),
    update_brew: bool = typer.Option(True, "--update/--no-update", help="Run brew update"),
    upgrade: bool = typer.Option(False, "--upgrade", help="Run brew upgrade --greedy"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Run brew autoremove and cleanup"),
) -> None:
    """Write and register the schedule; no weekdays removes it."""
    try:
        occurrences = [ScheduleOccurrence(weekday=d, hour=hour, minute=minute) for d in weekdays]
        schedule = Schedule(occurrences, ScheduleActions(update=update_brew, upgrade=upgrade, cleanup=cleanup))
        asyncio.run(_auto_updater().apply_schedule(schedule))
        if occurrences:
            console.print(f"Scheduled {len(occurrences)} weekly runs", style="green")
        else:
            console.print("Schedule removed")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


@schedule_app.command("disable")
def schedule_disable() -> None:
    """Stop the agent without deleting the schedule."""
    try:
        asyncio.run(_auto_updater().toggle_enabled(False))
        console.print("Schedule disabled")
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


@schedule_app.command("enable")
def schedule_enable() -> None:
    """Re-register a disabled schedule."""
    try:
        asyncio.run(_auto_updater().toggle_enabled(True))
        console.print("Schedule enabled")
    except Exception as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
