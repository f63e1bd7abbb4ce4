"""Tests for ado_mcp.sanitiser — path segments and argument validators."""

from __future__ import annotations

import re

import pytest

from ado_mcp.errors import ValidationError
from ado_mcp.sanitiser import (
    require_build_id,
    require_category,
    require_hours,
    require_name,
    sanitize_segment,
)

_ALLOWED = re.compile(r"^[A-Za-z0-9._-]+$")


# ---------------------------------------------------------------------------
# sanitize_segment
# ---------------------------------------------------------------------------


class TestSanitizeSegment:
    def test_spaces_become_placeholder(self):
        assert sanitize_segment("Build Job") == "Build-Job"

    def test_allowed_characters_untouched(self):
        assert sanitize_segment("build-12345_log.v2.txt") == "build-12345_log.v2.txt"

    def test_separators_replaced(self):
        assert sanitize_segment("a/b\\c") == "a-b-c"

    def test_traversal_cannot_escape(self):
        safe = sanitize_segment("../../etc/passwd")
        assert "/" not in safe
        assert safe == "..-..-etc-passwd"

    @pytest.mark.parametrize(
        "raw",
        ["GPU and System Diagnostics", "Déploiement ✓", "job:1|2", "tab\tname", "x" * 300, "?"],
    )
    def test_output_only_allowed_and_non_empty(self, raw):
        safe = sanitize_segment(raw)
        assert safe
        assert _ALLOWED.match(safe)
        assert len(safe) == len(raw)

    @pytest.mark.parametrize("raw", ["", "   ", "\n\t", None, 42])
    def test_rejects_blank_or_non_string(self, raw):
        with pytest.raises(ValidationError):
            sanitize_segment(raw)

    @pytest.mark.parametrize("raw", [".", ".."])
    def test_rejects_dot_segments(self, raw):
        with pytest.raises(ValidationError, match="dots"):
            sanitize_segment(raw)

    def test_deterministic(self):
        assert sanitize_segment("Run #7 (retry)") == sanitize_segment("Run #7 (retry)")


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


class TestRequireBuildId:
    @pytest.mark.parametrize("value, expected", [(1, 1), (12345, 12345), (7.0, 7), ("42", 42)])
    def test_accepts_positive_integers(self, value, expected):
        assert require_build_id(value) == expected

    @pytest.mark.parametrize("value", [0, -1, 1.5, "abc", "", None, True, [1], "²", "١٢", "12³"])
    def test_rejects_everything_else(self, value):
        with pytest.raises(ValidationError) as exc_info:
            require_build_id(value)
        assert "positive integer" in str(exc_info.value)
        assert exc_info.value.kind == "validation"

    def test_error_names_the_field(self):
        with pytest.raises(ValidationError) as exc_info:
            require_build_id(-3, field="build_id")
        assert exc_info.value.to_dict()["field"] == "build_id"


class TestOtherValidators:
    def test_category(self):
        assert require_category("logs") == "logs"
        assert require_category("artifacts") == "artifacts"
        with pytest.raises(ValidationError):
            require_category("cache")

    def test_name(self):
        assert require_name("Deploy") == "Deploy"
        with pytest.raises(ValidationError):
            require_name("  ")

    def test_hours(self):
        assert require_hours(24) == 24.0
        assert require_hours(-1) == -1.0
        for bad in ("24", None, True, float("nan")):
            with pytest.raises(ValidationError):
                require_hours(bad)
