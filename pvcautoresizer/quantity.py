"""Parsing and formatting of Kubernetes resource quantities."""

from __future__ import annotations

import math
import re
from fractions import Fraction

__all__ = ["QuantityError", "parse_quantity", "format_quantity"]


class QuantityError(ValueError):
    """Raised when a string is not a valid resource quantity."""


_BINARY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}

_DECIMAL_SUFFIXES = {
    "n": Fraction(1, 10**9),
    "u": Fraction(1, 10**6),
    "m": Fraction(1, 10**3),
    "": Fraction(1),
    "k": Fraction(10**3),
    "M": Fraction(10**6),
    "G": Fraction(10**9),
    "T": Fraction(10**12),
    "P": Fraction(10**15),
    "E": Fraction(10**18),
}

_NUMBER_RE = re.compile(r"([+-]?)(\d+(?:\.\d*)?|\.\d+)(.*)", re.DOTALL)
_EXPONENT_RE = re.compile(r"[eE]([+-]?\d+)")

# Largest power first so that the biggest exact suffix wins.
_FORMAT_SUFFIXES = sorted(_BINARY_SUFFIXES.items(), key=lambda item: item[1], reverse=True)


def _multiplier(suffix: str, text: str) -> Fraction:
    if suffix in _BINARY_SUFFIXES:
        return Fraction(_BINARY_SUFFIXES[suffix])
    if suffix in _DECIMAL_SUFFIXES:
        return _DECIMAL_SUFFIXES[suffix]
    exponent = _EXPONENT_RE.fullmatch(suffix)
    if exponent:
        return Fraction(10) ** int(exponent.group(1))
    raise QuantityError(f"quantities must match the regular expression: {text!r}")


def parse_quantity(text: str) -> int:
    """Parse a quantity such as ``"10Gi"`` or ``"1.5k"`` into an integer.

    Fractional results are rounded away from zero, as the API server does
    when asked for an integer value.
    """
    if not text:
        raise QuantityError("quantities must match the regular expression: empty string")
    match = _NUMBER_RE.fullmatch(text)
    if match is None:
        raise QuantityError(f"quantities must match the regular expression: {text!r}")
    sign, number, suffix = match.groups()
    amount = Fraction(number) * _multiplier(suffix, text)
    magnitude = math.ceil(amount)
    return -magnitude if sign == "-" else magnitude


def format_quantity(value: int) -> str:
    """Format a byte count in binary SI notation, e.g. ``2147483648`` -> ``"2Gi"``."""
    if -1024 < value < 1024:
        return str(value)
    for suffix, factor in _FORMAT_SUFFIXES:
        if value % factor == 0:
            return f"{value // factor}{suffix}"
    return str(value)