"""Tests for version parsing, comparison and normalization."""

import itertools

import pytest

from updater.versioning import (
    ComparisonResult,
    Version,
    clean_brew_version_for_display,
    compare_strings,
    is_brew_version_newer,
    is_commit_hash_version,
    is_numerically_newer,
    is_pre_release_version,
    is_store_version_newer,
    normalize_version,
    parse_segments,
    strip_brew_revision_suffix,
)

SAMPLE_VERSIONS = [
    "1.0", "1.2", "1.2.0", "1.2A", "1.2B", "1.2.2", "1.3", "1.2a1", "2.0 beta",
    "10.0", "1.10", "1.9", "0.9.9", "3", "3.0.0.0", "1.2-rc1", "1.2.0a", "٣.١",
]


class TestCompareStrings:
    """Test raw version string comparison."""

    @pytest.mark.parametrize("lhs,rhs,expected", [
        ("1.3", "1.2", ComparisonResult.NEWER),
        ("1.2", "1.3", ComparisonResult.OLDER),
        ("1.2A", "1.2B", ComparisonResult.OLDER),
        ("1.2A", "1.2.2", ComparisonResult.OLDER),
        ("1.2", "1.2.0", ComparisonResult.EQUAL),
        ("1.2", "1.2A", ComparisonResult.NEWER),
        ("1.10", "1.9", ComparisonResult.NEWER),
        ("1.2a1", "1.2a", ComparisonResult.NEWER),
    ])
    def test_known_cases(self, lhs, rhs, expected):
        """Should order the documented version pairs."""
        assert compare_strings(lhs, rhs) is expected

    def test_empty_is_undefined(self):
        """Should refuse to order a side without components."""
        assert compare_strings("", "1.0") is ComparisonResult.UNDEFINED
        assert compare_strings("1.0", None) is ComparisonResult.UNDEFINED
        assert compare_strings("...", "1.0") is ComparisonResult.UNDEFINED

    def test_comparison_is_total_and_antisymmetric(self):
        """Should give exactly one ordering, and the inverse when swapped."""
        for a, b in itertools.product(SAMPLE_VERSIONS, repeat=2):
            forward = compare_strings(a, b)
            backward = compare_strings(b, a)
            assert forward in (ComparisonResult.OLDER, ComparisonResult.EQUAL, ComparisonResult.NEWER)
            assert backward is forward.inverted(), f"{a} vs {b}"

    def test_unicode_digits_are_numbers(self):
        """Should compare non-ASCII digits by value."""
        assert compare_strings("٣.١", "3.1") is ComparisonResult.EQUAL


class TestParseSegments:
    """Test version tokenization."""

    def test_components_and_separators(self):
        """Should alternate components and separators."""
        segments = parse_segments("12.3b")
        assert [type(s).__name__ for s in segments] == ["Component", "Separator", "Component"]
        assert segments[0].plain == "12"
        assert [a.value for a in segments[2].atoms] == [3, "b"]

    def test_whitespace_separates(self):
        """Should treat spaces as separators."""
        segments = parse_segments("2.0 beta")
        assert segments[-1].plain == "beta"

    def test_leading_zeros_survive(self):
        """Should keep the original text of numeric atoms."""
        assert parse_segments("1.05")[-1].plain == "05"


class TestVersion:
    """Test the version/build pair."""

    def test_operators(self):
        """Should support rich comparisons."""
        assert Version("1.3") > Version("1.2")
        assert Version("1.2") < Version("1.3")
        assert Version("1.2") == Version("1.2.0")
        assert Version("1.2") >= Version("1.2.0")
        assert Version("1.2") <= Version("1.3")

    def test_builds_used_when_both_distinct(self):
        """Should compare build numbers only when both sides carry a distinct one."""
        assert Version("1.0", "200") > Version("1.0", "150")
        assert Version("1.1", "1.1") > Version("1.0", "999")

    def test_unhashable(self):
        """Should not be usable as a dict key."""
        with pytest.raises(TypeError):
            hash(Version("1.0"))

    def test_is_empty(self):
        """Should report versions without any component."""
        assert Version().is_empty
        assert Version("", None).is_empty
        assert not Version(None, "12").is_empty

    def test_str(self):
        """Should render the build in parentheses when it differs."""
        assert str(Version("1.2", "34")) == "1.2 (34)"
        assert str(Version("1.2", "1.2")) == "1.2"
        assert str(Version(None, "34")) == "34"


class TestSanitize:
    """Test correction of remote versions against the installed app."""

    def test_trailing_build_component_split_off(self):
        """Should treat a trailing component equal to the build as the build number."""
        remote = Version("1.4.0.512").sanitize(Version("1.4.0", "512"))
        assert remote.version_number == "1.4.0"
        assert remote.build_number == "512"

    def test_version_equal_to_build_becomes_build(self):
        """Should move a remote version that equals the installed build to the build slot."""
        remote = Version("512", "512").sanitize(Version("1.4", "512"))
        assert remote.version_number is None
        assert remote.build_number == "512"

    def test_fourth_component_dropped_when_build_equals_version(self):
        """Should keep the trimmed remainder as the version number."""
        installed = Version("1.2.3", "1.2.3")
        remote = Version("1.2.3.4").sanitize(installed)

        assert remote.version_number == "1.2.3"
        assert remote.build_number is None
        assert remote.compare(installed) is ComparisonResult.EQUAL

    def test_unrelated_version_untouched(self):
        """Should leave unrelated versions alone."""
        remote = Version("2.0", "300")
        assert remote.sanitize(Version("1.0", "100")) is remote

    @pytest.mark.parametrize("remote,installed", [
        (Version("1.4.0.512"), Version("1.4.0", "512")),
        (Version("512"), Version("1.4", "512")),
        (Version("1.2.3.4"), Version("1.2.3", "1.2.3")),
        (Version("2.0", "300"), Version("1.0", "100")),
    ])
    def test_idempotent(self, remote, installed):
        """Should be a no-op when applied a second time."""
        once = remote.sanitize(installed)
        twice = once.sanitize(installed)
        assert (twice.version_number, twice.build_number) == (once.version_number, once.build_number)


class TestVersionHelpers:
    """Test normalization and classification helpers."""

    @pytest.mark.parametrize("raw,expected", [
        ("4", "4.0.0"),
        ("4.9", "4.9.0"),
        ("4.10.0", "4.10.0"),
    ])
    def test_normalize_version(self, raw, expected):
        """Should pad to three components."""
        assert normalize_version(raw) == expected

    @pytest.mark.parametrize("version,expected", [
        ("1.0.0-beta", True),
        ("2.0rc1", True),
        ("3.1-alpha.2", True),
        ("4.9.0", False),
        ("My App dev edition 1.0", False),
    ])
    def test_is_pre_release_version(self, version, expected):
        """Should detect dash-prefixed and digit-suffixed pre-release markers."""
        assert is_pre_release_version(version) is expected

    def test_is_commit_hash_version(self):
        """Should match hexadecimal commit-like versions."""
        assert is_commit_hash_version("a1b2c3d4e5")
        assert is_commit_hash_version("DEADBEEF-nightly")
        assert not is_commit_hash_version("1.2.3")
        assert not is_commit_hash_version("abc")

    def test_store_version_newer(self):
        """Should compare padded store versions."""
        assert is_store_version_newer("4.9", "4.10") is True
        assert is_store_version_newer("4.10.0", "4.10") is False
        assert is_store_version_newer("1.2.3.4", "1.2.4") is None
        assert is_store_version_newer("1.0", "1.1 beta") is None

    def test_brew_suffix_helpers(self):
        """Should keep only the user-facing part of Homebrew versions."""
        assert strip_brew_revision_suffix("2.14.1_1") == "2.14.1"
        assert clean_brew_version_for_display("0.14.1,fc79e") == "0.14.1"

    def test_brew_version_newer(self):
        """Should compare well-formed versions and fall back to inequality."""
        assert is_brew_version_newer("1.0", "2.0")
        assert not is_brew_version_newer("2.0", "1.0")
        assert not is_brew_version_newer("1.0", "1.0,abc123")
        assert is_brew_version_newer("latest-a", "latest-b")
        assert not is_brew_version_newer(None, "1.0")

    def test_numerically_newer(self):
        """Should compare embedded numbers by value."""
        assert is_numerically_newer("10", "9")
        assert is_numerically_newer("1.10", "1.9")
        assert not is_numerically_newer("100", "100")
