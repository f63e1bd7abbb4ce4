"""Input sanitisation — filesystem-safe segments and argument validators.

Pure functions for turning caller-supplied names into path segments that
can never escape their parent directory, plus the hard preconditions every
download path is built from (build id, category, non-empty name).
All operations are pure — no I/O or side effects.
"""

from __future__ import annotations

import re

from ado_mcp.errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PLACEHOLDER = "-"

CATEGORIES: tuple[str, ...] = ("logs", "artifacts")

_DISALLOWED = re.compile(r"[^A-Za-z0-9._-]")
_DOTS_ONLY = re.compile(r"^\.+$")


# ---------------------------------------------------------------------------
# Segment sanitisation
# ---------------------------------------------------------------------------


def sanitize_segment(raw: object, *, field: str = "filename") -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with ``-``.

    >>> sanitize_segment("Build Job")
    'Build-Job'
    >>> sanitize_segment("../etc/passwd")
    '..-etc-passwd'

    Raises ``ValidationError`` for non-string, empty or whitespace-only
    input, and for results made only of dots (``.``/``..``), which would
    address the current or parent directory.
    """
    name = require_name(raw, field=field)
    safe = _DISALLOWED.sub(PLACEHOLDER, name)
    if _DOTS_ONLY.match(safe):
        raise ValidationError(field, raw, "Name must not consist only of dots.")
    return safe


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def require_name(value: object, *, field: str = "name") -> str:
    """Return *value* unchanged if it is a non-blank string."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, value, "Must be a non-empty string.")
    return value


def require_build_id(value: object, *, field: str = "build_id") -> int:
    """Coerce *value* to a positive integer build id.

    Accepts ints, integral floats (``12345.0``, as JSON clients sometimes
    send) and digit strings.  Rejects bools, fractional numbers, zero and
    negatives.
    """
    if isinstance(value, bool):
        raise ValidationError(field, value, "Must be a positive integer.")
    if isinstance(value, int):
        build_id = value
    elif isinstance(value, float) and value.is_integer():
        build_id = int(value)
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        build_id = int(value.strip())
    else:
        raise ValidationError(field, value, "Must be a positive integer.")
    if build_id <= 0:
        raise ValidationError(field, value, "Must be a positive integer.")
    return build_id


def require_category(value: object) -> str:
    """Return *value* if it is one of the download categories."""
    if value not in CATEGORIES:
        raise ValidationError(
            "category", value, f"Must be one of: {', '.join(CATEGORIES)}."
        )
    return value  # type: ignore[return-value]


def require_hours(value: object, *, field: str = "older_than_hours") -> float:
    """Return *value* as a float number of hours (negatives allowed)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field, value, "Must be a number of hours.")
    if value != value:  # NaN
        raise ValidationError(field, value, "Must be a number of hours.")
    return float(value)
