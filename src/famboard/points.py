"""Utilities for working with point values in FamBoard."""

from __future__ import annotations

from typing import Union

from .exceptions import ValidationError

PointsLike = Union[int, str]


def to_points(value: PointsLike) -> int:
    """Convert ``value`` to a whole number of points."""

    if isinstance(value, bool):
        raise ValidationError("Points must be a whole number, not a boolean.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValidationError(f"Not a whole number of points: {value!r}") from exc
    raise ValidationError(f"Unsupported points type: {type(value)!r}")


def require_positive(points: int, *, allow_zero: bool = False) -> int:
    """Ensure ``points`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if points < 0:
            raise ValidationError("Points must be zero or greater.")
    else:
        if points <= 0:
            raise ValidationError("Points must be greater than zero.")
    return points


def format_points(points: int) -> str:
    """Return ``points`` as a display string (e.g. ``1,250 pts``)."""

    return f"{points:,} pts"
