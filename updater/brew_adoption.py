"""Matching apps installed outside Homebrew to casks that could manage them."""

import json
import re
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .errors import LookupDecodeError
from .models import AdoptableCask, InstalledApp

MANUAL_ENTRY_SCORE = 999

_NON_ALNUM = re.compile(r"[\W_]+")


def pear_format(text: str | None) -> str:
    """Canonical form for fuzzy name matching: lowercase alphanumerics only."""
    return _NON_ALNUM.sub("", (text or "").lower())


class CaskInfo(BaseModel):
    """A cask entry as printed by ``brew info --json=v2 --eval-all``."""

    token: str
    name: list[str] = Field(default_factory=list)
    desc: str | None = None
    homepage: str | None = None
    version: str | None = None
    auto_updates: bool | None = None
    deprecated: bool = False
    disabled: bool = False
    artifacts: list = Field(default_factory=list)

    @property
    def display_name(self) -> str | None:
        return self.name[0] if self.name else None

    @property
    def app_artifacts(self) -> list[str]:
        apps = []
        for artifact in self.artifacts:
            if isinstance(artifact, dict):
                apps.extend(a for a in artifact.get("app", []) if isinstance(a, str))
        return apps


def load_casks(path: Path) -> list[CaskInfo]:
    """Read casks from a ``brew info --json=v2`` dump or a plain JSON list."""
    try:
        data = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise LookupDecodeError(f"Cannot read cask list {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("casks", [])
    try:
        return [CaskInfo.model_validate(item) for item in data]
    except ValidationError as e:
        raise LookupDecodeError(f"Invalid cask entry in {path}: {e}") from e


def _partial(a: str, b: str) -> bool:
    # One- and two-letter names ("R") would match almost anything.
    if len(a) <= 2 or len(b) <= 2:
        return False
    return a in b or b in a


def score_cask(app: InstalledApp, cask: CaskInfo) -> int:
    app_name = pear_format(app.app_name)
    bundle_id = pear_format(app.bundle_identifier)
    if not app_name:
        return 0
    score = 0

    for artifact in cask.app_artifacts:
        normalized = pear_format(artifact)
        if not normalized:
            continue
        if normalized == app_name + "app":
            score += 100
            break
        if normalized == app_name:
            score += 90
            break
        if normalized in app_name or app_name in normalized:
            score += 50
            break

    for name in cask.name:
        normalized = pear_format(name)
        if not normalized:
            continue
        if normalized == app_name:
            score += 80
            break
        if _partial(normalized, app_name):
            score += 40
            break

    display = pear_format(cask.display_name)
    if display:
        if display == app_name:
            score += 70
        elif _partial(display, app_name):
            score += 35

    token = pear_format(cask.token)
    if token:
        if token == app_name:
            score += 60
        elif _partial(token, app_name):
            score += 30

    if bundle_id and bundle_id in pear_format(cask.desc):
        score += 25

    return score


def _adoptable(app: InstalledApp, cask: CaskInfo, score: int) -> AdoptableCask:
    auto_updates = bool(cask.auto_updates)
    version = cask.version or "unknown"
    return AdoptableCask(
        token=cask.token,
        display_name=cask.display_name or cask.token,
        description=cask.desc,
        version=version,
        auto_updates=auto_updates,
        homepage=cask.homepage,
        is_version_compatible=auto_updates or pear_format(app.app_version) == pear_format(version),
        match_score=score,
    )


def find_matching_casks(app: InstalledApp, casks: list[CaskInfo]) -> list[AdoptableCask]:
    """Rank casks that likely package ``app``, best match first.

    Deprecated and disabled casks never appear; ties are broken by token.
    """
    scored = []
    for cask in casks:
        if cask.deprecated or cask.disabled:
            continue
        score = score_cask(app, cask)
        if score > 0:
            scored.append((score, cask))
    scored.sort(key=lambda pair: (-pair[0], pair[1].token))
    return [_adoptable(app, cask, score) for score, cask in scored]


def validate_manual_entry(token: str, app: InstalledApp, casks: list[CaskInfo]) -> AdoptableCask | None:
    """Accept a user-typed token only if it names a usable cask exactly."""
    wanted = pear_format(token)
    cask = next((c for c in casks if pear_format(c.token) == wanted), None)
    if cask is None or cask.deprecated or cask.disabled:
        return None
    return _adoptable(app, cask, MANUAL_ENTRY_SCORE)
