"""
Numeric field parsing and energy values for level-scheme records.

Record fields arrive as strings. A field either parses to a number or it is
"absent"; absent is represented as ``None`` and is never collapsed to NaN or
zero, since an absent uncertainty and an uncertainty of zero weight
measurements differently.

The accepted literal grammar is a superset of ordinary floating literals:
optional leading/trailing control whitespace, optional sign, ``NaN``,
``Infinity``, decimal and exponent forms, hexadecimal floating forms and an
optional ``f``/``F``/``d``/``D`` type suffix.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

# Lab-to-CM recoil constant, 1/(2 m_u c^2) in 1/keV
RECOIL_CONSTANT = 5.3677e-7

_DIGITS = r"(\d+)"
_HEX_DIGITS = r"([0-9a-fA-F]+)"
_EXP = r"[eE][+-]?" + _DIGITS
_FLOAT_PATTERN = (
    r"[\x00-\x20]*"
    r"[+-]?("
    r"NaN|"
    r"Infinity|"
    r"((("
    + _DIGITS + r"(\.)?(" + _DIGITS + r"?)(" + _EXP + r")?)|"
    r"(\.(" + _DIGITS + r")(" + _EXP + r")?)|"
    r"(("
    r"(0[xX]" + _HEX_DIGITS + r"(\.)?)|"
    r"(0[xX]" + _HEX_DIGITS + r"?(\.)" + _HEX_DIGITS + r")"
    r")[pP][+-]?" + _DIGITS + r"))"
    r"[fFdD]?))"
    r"[\x00-\x20]*"
)
_FLOAT_RE = re.compile(_FLOAT_PATTERN)
_CONTROL_WHITESPACE = "".join(chr(c) for c in range(0x21))


def is_numeric(text: Optional[str]) -> bool:
    """Return True if ``text`` matches the numeric literal grammar."""
    if text is None:
        return False
    return _FLOAT_RE.fullmatch(text) is not None


def parse_numeric(text: Optional[str]) -> Optional[float]:
    """
    Parse a record field into a float.

    Parameters
    ----------
    text : str or None
        Raw field text.

    Returns
    -------
    float or None
        Parsed value, or None when the text is not a numeric literal.
    """
    if not is_numeric(text):
        return None
    body = text.strip(_CONTROL_WHITESPACE)
    sign = 1.0
    if body[0] in "+-":
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "NaN":
        return float("nan")
    if body == "Infinity":
        return sign * float("inf")
    if body[-1] in "fFdD":
        body = body[:-1]
    if body[:2] in ("0x", "0X"):
        return sign * float.fromhex(body)
    return sign * float(body)


def format_numeric(value: Optional[float]) -> str:
    """Render an optional number back to field text ('' when absent)."""
    if value is None:
        return ""
    return repr(float(value))


def mass_number(nucid: Optional[str]) -> int:
    """
    Mass number from a nuclide identifier such as ``'60NI'`` or ``' 152SM'``.

    Returns 0 when the identifier does not start with digits.
    """
    if not nucid:
        return 0
    match = re.match(r"\d+", nucid.strip())
    if match is None:
        return 0
    return int(match.group(0))


def recoil_correction(energy: Optional[float], mass: int) -> float:
    """Recoil correction E^2 * 5.3677e-7 / A (keV); zero if A is unknown."""
    if mass == 0 or energy is None:
        return 0.0
    return RECOIL_CONSTANT * energy * energy / float(mass)


@dataclass(frozen=True)
class Energy:
    """
    Level or transition energy: a numeric part and an optional qualifier.

    The qualifier holds the non-numeric token of offset band heads, e.g. the
    ``X`` in ``100+X``. Energies with different qualifiers are never compared
    numerically.

    Attributes:
        value: Numeric part in keV (0.0 when the text has no numeric part)
        qualifier: Non-numeric token, '' when absent
        text: Raw field text the energy was parsed from
    """

    value: float
    qualifier: str = ""
    text: str = ""

    @classmethod
    def parse(cls, text: str) -> "Energy":
        raw = text if text is not None else ""
        trimmed = raw.strip()
        attempt = parse_numeric(trimmed)
        if attempt is not None:
            return cls(attempt, "", raw)
        if "+" in raw:
            parts = raw.split("+")
            first = parts[0].strip()
            second = parts[1].strip()
            attempt = parse_numeric(first)
            if attempt is not None:
                return cls(attempt, second, raw)
            attempt = parse_numeric(second)
            if attempt is not None:
                return cls(attempt, first, raw)
        return cls(0.0, trimmed, raw)

    @classmethod
    def from_value(cls, value: float, qualifier: str = "") -> "Energy":
        text = repr(float(value)) if not qualifier else f"{float(value)!r}+{qualifier}"
        return cls(float(value), qualifier, text)

    @property
    def is_numeric(self) -> bool:
        return not self.qualifier

    def diff(self, other: "Energy") -> float:
        return self.value - other.value

    def qualifier_match(self, other: "Energy") -> bool:
        return self.qualifier == other.qualifier

    def is_same(self, other: "Energy", window: float = 3.0) -> bool:
        """Energy match: equal qualifiers and numeric parts closer than ``window``."""
        return self.qualifier == other.qualifier and abs(self.value - other.value) < window

    def sort_key(self) -> Tuple[str, float]:
        return (self.qualifier, self.value)

    def with_value(self, value: float) -> "Energy":
        return Energy.from_value(value, self.qualifier)

    def __str__(self) -> str:
        if not self.qualifier:
            return self.text.strip() or repr(self.value)
        return f"{self.value!r}+{self.qualifier}"


def mean_energy(energies: Iterable[Energy]) -> Energy:
    """Arithmetic mean of numeric parts; the first non-empty qualifier is kept."""
    values = list(energies)
    if not values:
        raise ValueError("Cannot average an empty list of energies")
    qualifier = next((e.qualifier for e in values if e.qualifier), "")
    total = sum(e.value for e in values) / len(values)
    return Energy.from_value(total, qualifier)
