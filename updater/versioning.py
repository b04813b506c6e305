"""Version parsing, comparison and normalization."""

import re
import unicodedata
from dataclasses import dataclass
from enum import Enum

from packaging.version import InvalidVersion
from packaging.version import Version as PackagingVersion


class ComparisonResult(Enum):
    """Ordering of a left-hand version relative to a right-hand one."""

    OLDER = -1
    EQUAL = 0
    NEWER = 1
    UNDEFINED = None

    def inverted(self) -> "ComparisonResult":
        if self is ComparisonResult.OLDER:
            return ComparisonResult.NEWER
        if self is ComparisonResult.NEWER:
            return ComparisonResult.OLDER
        return self


@dataclass(frozen=True)
class Atom:
    """A numeric or alphabetic run inside a component.

    ``value`` is an ``int`` for digit runs and a ``str`` otherwise; ``text`` keeps
    the characters exactly as written so leading zeros survive re-joining.
    """

    value: int | str
    text: str

    @property
    def is_number(self) -> bool:
        return isinstance(self.value, int)


@dataclass(frozen=True)
class Component:
    atoms: tuple[Atom, ...]

    @property
    def plain(self) -> str:
        return "".join(atom.text for atom in self.atoms)


@dataclass(frozen=True)
class Separator:
    text: str


Segment = Component | Separator


def _char_kind(char: str) -> str:
    if char.isspace():
        return "separator"
    category = unicodedata.category(char)
    if category == "Nd":
        return "digit"
    if category.startswith("P"):
        return "separator"
    if category in ("Cc", "Cf", "Cs", "Co", "Cn"):
        return "skip"
    return "letter"


def parse_segments(text: str) -> list[Segment]:
    """Tokenize a version string into alternating components and separators.

    Example: ``"12.3b"`` -> ``[Component(12), Separator("."), Component(3, "b")]``.
    Control and unassigned characters are dropped.
    """
    segments: list[Segment] = []
    atoms: list[Atom] = []
    chars = [c for c in text.strip() if _char_kind(c) != "skip"]
    i = 0
    while i < len(chars):
        kind = _char_kind(chars[i])
        j = i
        while j < len(chars) and _char_kind(chars[j]) == kind:
            j += 1
        run = "".join(chars[i:j])
        if kind == "digit":
            atoms.append(Atom(int(run), run))
        elif kind == "letter":
            atoms.append(Atom(run, run))
        else:
            if atoms:
                segments.append(Component(tuple(atoms)))
                atoms = []
            segments.append(Separator(run))
        i = j
    if atoms:
        segments.append(Component(tuple(atoms)))
    return segments


def join_segments(segments: list[Segment]) -> str | None:
    text = "".join(s.plain if isinstance(s, Component) else s.text for s in segments)
    return text or None


def _components(text: str | None) -> list[Component]:
    if text is None:
        return []
    return [s for s in parse_segments(text) if isinstance(s, Component)]


def _compare_atoms(lhs: Atom, rhs: Atom) -> ComparisonResult:
    if lhs.is_number and rhs.is_number:
        if lhs.value == rhs.value:
            return ComparisonResult.EQUAL
        return ComparisonResult.NEWER if lhs.value > rhs.value else ComparisonResult.OLDER
    if not lhs.is_number and not rhs.is_number:
        if lhs.value == rhs.value:
            return ComparisonResult.EQUAL
        return ComparisonResult.NEWER if lhs.value > rhs.value else ComparisonResult.OLDER
    # A letter run never beats a number in the same position.
    return ComparisonResult.OLDER if not lhs.is_number else ComparisonResult.NEWER


def _compare_components(lhs: Component, rhs: Component) -> ComparisonResult:
    for left, right in zip(lhs.atoms, rhs.atoms):
        result = _compare_atoms(left, right)
        if result is not ComparisonResult.EQUAL:
            return result
    if len(lhs.atoms) == len(rhs.atoms):
        return ComparisonResult.EQUAL

    lhs_longer = len(lhs.atoms) > len(rhs.atoms)
    longer = lhs if lhs_longer else rhs
    extra = longer.atoms[min(len(lhs.atoms), len(rhs.atoms))]
    # Trailing letters ("1.2a") mark an older build, trailing digits ("1.2a1") a newer one.
    longer_result = ComparisonResult.NEWER if extra.is_number else ComparisonResult.OLDER
    return longer_result if lhs_longer else longer_result.inverted()


def compare_strings(lhs: str | None, rhs: str | None) -> ComparisonResult:
    """Compare two raw version strings."""
    left, right = _components(lhs), _components(rhs)
    if not left or not right:
        return ComparisonResult.UNDEFINED

    for lcomp, rcomp in zip(left, right):
        result = _compare_components(lcomp, rcomp)
        if result is not ComparisonResult.EQUAL:
            return result

    if len(left) == len(right):
        return ComparisonResult.EQUAL

    lhs_longer = len(left) > len(right)
    longer = left if lhs_longer else right
    first_extra = longer[min(len(left), len(right))].atoms[0]
    if first_extra.is_number and first_extra.value == 0:
        return ComparisonResult.EQUAL
    longer_result = ComparisonResult.NEWER if first_extra.is_number else ComparisonResult.OLDER
    return longer_result if lhs_longer else longer_result.inverted()


@dataclass(frozen=True, eq=False)
class Version:
    """A user-facing version number plus an optional build number."""

    version_number: str | None = None
    build_number: str | None = None

    __hash__ = None

    @property
    def is_empty(self) -> bool:
        return not _components(self.version_number) and not _components(self.build_number)

    def _has_distinct_build(self) -> bool:
        return bool(self.build_number) and self.build_number != self.version_number

    def compare(self, other: "Version") -> ComparisonResult:
        """Compare against ``other``.

        Build numbers are used only when both sides carry one that differs from
        their own version number; otherwise version numbers are compared.
        """
        if self._has_distinct_build() and other._has_distinct_build():
            return compare_strings(self.build_number, other.build_number)
        return compare_strings(self.version_number, other.version_number)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) is ComparisonResult.EQUAL

    def __lt__(self, other: "Version") -> bool:
        return self.compare(other) is ComparisonResult.OLDER

    def __gt__(self, other: "Version") -> bool:
        return self.compare(other) is ComparisonResult.NEWER

    def __le__(self, other: "Version") -> bool:
        return self.compare(other) in (ComparisonResult.OLDER, ComparisonResult.EQUAL)

    def __ge__(self, other: "Version") -> bool:
        return self.compare(other) in (ComparisonResult.NEWER, ComparisonResult.EQUAL)

    def _sanitize_step(self, app_version: "Version") -> "Version":
        installed_build = app_version.build_number
        segments = parse_segments(self.version_number) if self.version_number else []

        # Trailing component is really the build number: "1.4.0.512" with build "512".
        if (
            self.build_number is None
            and installed_build
            and segments
            and isinstance(segments[-1], Component)
            and segments[-1].plain == installed_build
        ):
            remainder = segments[:-1]
            if remainder and isinstance(remainder[-1], Separator):
                remainder = remainder[:-1]
            return Version(join_segments(remainder), segments[-1].plain)

        # Whole remote version is the installed build number. Not applicable when
        # the installed build is just a copy of the installed version.
        if (
            self.version_number is not None
            and installed_build
            and installed_build != app_version.version_number
            and self.version_number == installed_build
        ):
            return Version(None, self.version_number)

        # Four-component remote against an app whose build equals its version.
        if (
            installed_build
            and installed_build == app_version.version_number
            and len(segments) == 7
            and isinstance(segments[-1], Component)
        ):
            trimmed = join_segments(segments[:-2])
            if trimmed == installed_build:
                return Version(trimmed, self.build_number)

        return self

    def sanitize(self, app_version: "Version") -> "Version":
        """Correct ambiguous remote encodings using the installed app's version.

        Corrections are applied until none changes the result, so applying
        ``sanitize`` again with the same argument is a no-op.
        """
        current = self
        while True:
            step = current._sanitize_step(app_version)
            if (step.version_number, step.build_number) == (current.version_number, current.build_number):
                return current
            current = step

    def __str__(self) -> str:
        if self.version_number and self._has_distinct_build():
            return f"{self.version_number} ({self.build_number})"
        return self.version_number or self.build_number or ""


_PRE_RELEASE_KEYWORDS = ("beta", "alpha", "rc", "pre", "preview", "dev", "snapshot")
_COMMIT_HASH = re.compile(r"^[0-9a-f]{8,}.*$", re.IGNORECASE)
_THREE_COMPONENTS = re.compile(r"^\d+\.\d+\.\d+$")
_BREW_REVISION = re.compile(r"_\d+$")


def is_pre_release_version(version: str) -> bool:
    """Return True for SemVer-style ("1.0-beta") or digit-suffixed ("2.0rc1") pre-releases."""
    lowered = version.lower()
    for keyword in _PRE_RELEASE_KEYWORDS:
        if f"-{keyword}" in lowered:
            return True
        if re.search(rf"\d+.*{keyword}", lowered):
            return True
    return False


def is_commit_hash_version(version: str) -> bool:
    return bool(_COMMIT_HASH.match(version))


def normalize_version(version: str) -> str:
    """Pad a dotted version to three components ("4.9" -> "4.9.0")."""
    parts = version.strip().split(".")
    while len(parts) < 3:
        parts.append("0")
    return ".".join(parts)


def is_store_version_newer(installed: str, available: str) -> bool | None:
    """Compare App Store versions after padding both to three numeric components.

    Returns None when either side is not a plain ``X.Y.Z`` version after padding.
    """
    left, right = normalize_version(installed), normalize_version(available)
    if not _THREE_COMPONENTS.match(left) or not _THREE_COMPONENTS.match(right):
        return None
    return PackagingVersion(right) > PackagingVersion(left)


def strip_brew_revision_suffix(version: str) -> str:
    """Drop a Homebrew revision suffix ("2.14.1_1" -> "2.14.1")."""
    return _BREW_REVISION.sub("", version)


def clean_brew_version_for_display(version: str) -> str:
    """Keep the user-facing part of a cask version ("0.14.1,fc79e" -> "0.14.1")."""
    return strip_brew_revision_suffix(version.split(",", 1)[0])


def is_brew_version_newer(installed: str | None, available: str | None) -> bool:
    """Well-formed comparison for Homebrew versions, falling back to inequality."""
    if not installed or not available:
        return False
    left = clean_brew_version_for_display(installed)
    right = clean_brew_version_for_display(available)
    try:
        return PackagingVersion(right) > PackagingVersion(left)
    except InvalidVersion:
        return left != right


def _natural_key(text: str) -> list[tuple[int, int | str]]:
    return [(0, int(part)) if part.isdigit() else (1, part) for part in re.split(r"(\d+)", text) if part]


def is_numerically_newer(candidate: str, installed: str) -> bool:
    """Compare strings with embedded numbers by value ("10" > "9", "1.10" > "1.9")."""
    return _natural_key(candidate) > _natural_key(installed)
