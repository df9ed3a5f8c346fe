"""
Tests for branch normalization.
"""

import pytest

from buildresolver.resolve.branches import is_branch_listed, normalize_branch

pytestmark = [pytest.mark.unit, pytest.mark.core_downloads]


class TestNormalizeBranch:
    """Test normalize_branch."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("release", "release"),
            ("Pre-Release", "pre-release"),
            ("prerelease", "pre-release"),
            ("PRE_RELEASE", "pre-release"),
            ("  beta ", "beta"),
            ("alpha", "alpha"),
        ],
    )
    def test_known_names(self, raw, expected):
        assert normalize_branch(raw) == expected

    @pytest.mark.parametrize("raw", ["nightly", "", None])
    def test_unknown_names_fall_back_to_release(self, raw):
        assert normalize_branch(raw) == "release"

    def test_fallback_is_logged_at_debug(self, mocker):
        mock_logger = mocker.patch("buildresolver.resolve.branches.logger")

        normalize_branch("nightly")

        mock_logger.debug.assert_called_once()


class TestIsBranchListed:
    """Test is_branch_listed."""

    def test_synonyms_match(self):
        assert is_branch_listed(["prerelease"], "pre-release") is True
        assert is_branch_listed(["Pre-Release"], "pre_release") is True

    def test_unknown_entries_do_not_collapse_to_release(self):
        assert is_branch_listed(["nightly"], "release") is False

    def test_empty_list(self):
        assert is_branch_listed([], "release") is False
