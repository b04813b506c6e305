"""Scheduled Homebrew maintenance through a per-user launchd agent."""

import logging
import os
import plistlib
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ScheduleError
from .models import ScheduleOccurrence
from .process import run_command

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "io.appupdater.homebrew-autoupdate"
LOG_PATH = "/tmp/homebrew-autoupdate.log"


@dataclass
class ScheduleActions:
    """Which maintenance steps every scheduled run performs."""

    update: bool = True
    upgrade: bool = False
    cleanup: bool = False


@dataclass
class Schedule:
    occurrences: list[ScheduleOccurrence] = field(default_factory=list)
    actions: ScheduleActions = field(default_factory=ScheduleActions)


def build_script(brew_path: str, actions: ScheduleActions) -> str:
    """Shell block run by the agent; all output goes to the log file."""
    lines = [
        'echo ""',
        'echo "================================"',
        'echo "Homebrew Auto-Update - $(date)"',
        'echo "================================"',
        'echo ""',
    ]
    if actions.update:
        lines += ['echo "[ Updating Homebrew ]"', f"{brew_path} update 2>&1", 'echo ""']
    if actions.upgrade:
        lines += ['echo "[ Upgrading Packages ]"', f"{brew_path} upgrade --greedy 2>&1", 'echo ""']
    if actions.cleanup:
        lines += [
            'echo "[ Cleaning Up ]"',
            f"{brew_path} autoremove 2>&1",
            f"{brew_path} cleanup --prune=all 2>&1",
            'echo ""',
        ]
    lines += [
        'echo "================================"',
        'echo "Completed at $(date)"',
        'echo "================================"',
    ]
    return "{ " + "; ".join(lines) + "; } 2>&1"


def build_descriptor(
    label: str, brew_prefix: str, occurrences: list[ScheduleOccurrence], actions: ScheduleActions
) -> dict:
    return {
        "Label": label,
        "ProgramArguments": ["/bin/sh", "-c", build_script(f"{brew_prefix}/bin/brew", actions)],
        "EnvironmentVariables": {
            "PATH": f"{brew_prefix}/bin:/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin",
        },
        "RunAtLoad": False,
        "StandardOutPath": LOG_PATH,
        "StandardErrorPath": LOG_PATH,
        "StartCalendarInterval": [
            {"Weekday": o.weekday, "Hour": o.hour, "Minute": o.minute}
            for o in occurrences
            if o.is_enabled
        ],
    }


def parse_descriptor(data: dict) -> Schedule:
    """Recover occurrences and actions from a written descriptor."""
    occurrences = []
    for interval in data.get("StartCalendarInterval") or []:
        try:
            occurrences.append(ScheduleOccurrence(
                weekday=interval["Weekday"],
                hour=interval["Hour"],
                minute=interval["Minute"],
                is_enabled=True,
            ))
        except (KeyError, TypeError, ValueError):
            continue

    actions = ScheduleActions()
    args = data.get("ProgramArguments") or []
    if len(args) >= 3:
        command = args[2]
        actions = ScheduleActions(
            update="brew update" in command,
            upgrade="brew upgrade" in command,
            cleanup="brew autoremove" in command or "brew cleanup" in command,
        )
    return Schedule(occurrences=occurrences, actions=actions)


class HomebrewAutoUpdater:
    """Writes, registers and inspects the maintenance launch agent."""

    def __init__(
        self,
        brew_prefix: str,
        label: str = DEFAULT_LABEL,
        agents_dir: Path | None = None,
        uid: int | None = None,
    ):
        self.brew_prefix = brew_prefix
        self.label = label
        self.agents_dir = Path(agents_dir or Path.home() / "Library" / "LaunchAgents")
        self.uid = os.getuid() if uid is None else uid

    @property
    def plist_path(self) -> Path:
        return self.agents_dir / f"{self.label}.plist"

    @property
    def disabled_path(self) -> Path:
        return self.agents_dir / f"{self.label}.plist.disabled"

    @property
    def is_enabled(self) -> bool:
        return self.plist_path.exists() and not self.disabled_path.exists()

    def write_descriptor(self, schedule: Schedule) -> Path:
        descriptor = build_descriptor(self.label, self.brew_prefix, schedule.occurrences, schedule.actions)
        try:
            payload = plistlib.dumps(descriptor, fmt=plistlib.FMT_XML)
            plistlib.loads(payload)
        except (TypeError, ValueError, OverflowError) as e:
            raise ScheduleError(f"Invalid plist format: {e}") from e
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self.plist_path.write_bytes(payload)
        return self.plist_path

    def load_schedule(self) -> Schedule:
        path = self.plist_path if self.plist_path.exists() else self.disabled_path
        if not path.exists():
            return Schedule()
        try:
            with open(path, "rb") as f:
                data = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException, ValueError) as e:
            logger.warning("Failed to read %s: %s", path, e)
            return Schedule()
        return parse_descriptor(data)

    async def register(self) -> None:
        result = await run_command("launchctl", "bootstrap", f"gui/{self.uid}", str(self.plist_path))
        if not result.ok:
            raise ScheduleError(f"Failed to register LaunchAgent: {result.stderr.strip()}")

    async def unregister(self) -> None:
        result = await run_command("launchctl", "bootout", f"gui/{self.uid}/{self.label}")
        if not result.ok and "Could not find service" not in result.stderr:
            raise ScheduleError(f"Failed to unregister LaunchAgent: {result.stderr.strip()}")

    async def is_loaded(self) -> bool:
        result = await run_command("launchctl", "print", f"gui/{self.uid}/{self.label}")
        return result.ok

    async def apply_schedule(self, schedule: Schedule) -> None:
        """Write and register the agent, or remove it when nothing is enabled."""
        if not any(o.is_enabled for o in schedule.occurrences):
            await self.unregister()
            self.plist_path.unlink(missing_ok=True)
            logger.info("Removed Homebrew auto-update schedule")
            return

        self.write_descriptor(schedule)
        await self.unregister()
        await self.register()
        logger.info("Registered %s", self.label)

    async def toggle_enabled(self, enabled: bool) -> None:
        if enabled:
            if not self.disabled_path.exists():
                return
            self.disabled_path.rename(self.plist_path)
            try:
                await self.register()
            except ScheduleError:
                self.plist_path.rename(self.disabled_path)
                raise
        else:
            try:
                await self.unregister()
            except ScheduleError as e:
                logger.warning("%s", e)
            if self.plist_path.exists():
                self.plist_path.rename(self.disabled_path)
