"""
RUT helpers — Chilean taxpayer identifiers ("12.345.678-5").

The check digit is modulo 11 over the body digits, right to left, with
multipliers cycling 2..7; a remainder of 11 maps to "0" and 10 to "K".
"""

from __future__ import annotations

import re

from sii_dte.domain.errors import InvalidRutError

_RUT_PATTERN = re.compile(r"^(\d{1,8})-?([\dK])$")


def check_digit(body: int | str) -> str:
    total = 0
    multiplier = 2
    for digit in reversed(str(body)):
        total += int(digit) * multiplier
        multiplier = 2 if multiplier == 7 else multiplier + 1
    remainder = 11 - total % 11
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def normalize(rut: str) -> str:
    """Return the canonical "body-DV" form: no dots, no spaces, uppercase K."""
    cleaned = rut.replace(".", "").replace(" ", "").upper()
    match = _RUT_PATTERN.match(cleaned)
    if match is None:
        raise InvalidRutError(f"Malformed RUT: {rut!r}")
    body, dv = match.groups()
    return f"{int(body)}-{dv}"


def is_valid(rut: str) -> bool:
    try:
        body, dv = split(rut)
    except ValueError:
        return False
    return check_digit(body) == dv


def require_valid(rut: str) -> str:
    """Normalize `rut`, raising InvalidRutError unless its check digit matches."""
    body, dv = split(rut)
    if check_digit(body) != dv:
        raise InvalidRutError(f"Wrong check digit in RUT: {rut!r}")
    return f"{body}-{dv}"


def split(rut: str) -> tuple[str, str]:
    """Split into (body, check digit) after normalization."""
    body, dv = normalize(rut).split("-")
    return body, dv


def strip_hyphen(rut: str) -> str:
    """Body and check digit with no separator, as written in stamp fields."""
    body, dv = split(rut)
    return f"{body}{dv}"
