"""
Chilean RUT (Rol Único Tributario) parsing and validation.

A RUT is a numeric body plus a modulo-11 check digit ('0'-'9' or 'K'),
written ``12345678-5``.  Every party on a DTE is identified by one, and the
authority rejects documents whose RUTs do not check out, so the builder
validates them locally first.
"""

from __future__ import annotations

import re

_RUT_PATTERN = re.compile(r"^(\d{1,8})-?([\dK])$")

# Authority RUT that receives every EnvioDTE.
SII_RUT = "60803000-K"

# Generic counterparty accepted on receipts (boletas) to final consumers.
FINAL_CONSUMER_RUT = "66666666-6"


def check_digit(body: int | str) -> str:
    """Compute the modulo-11 check digit for a RUT body."""
    digits = str(int(body))
    total = 0
    factor = 2
    for ch in reversed(digits):
        total += int(ch) * factor
        factor = 2 if factor == 7 else factor + 1
    remainder = 11 - (total % 11)
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def normalize(value: str) -> str:
    """
    Canonical ``BODY-DV`` form: dots and spaces stripped, uppercase K.

    Raises:
        ValueError: If the value is not shaped like a RUT.
    """
    if value is None:
        raise ValueError("RUT is required")
    cleaned = value.replace(".", "").replace(" ", "").upper()
    match = _RUT_PATTERN.match(cleaned)
    if match is None:
        raise ValueError(f"Malformed RUT: {value!r}")
    body, dv = match.groups()
    return f"{int(body)}-{dv}"


def is_valid(value: str | None) -> bool:
    """True when value is well-formed and its check digit matches."""
    if not value:
        return False
    try:
        body, dv = split(value)
    except ValueError:
        return False
    return check_digit(body) == dv


def split(value: str) -> tuple[int, str]:
    """Return (body, check digit) of a RUT in any accepted notation."""
    body, dv = normalize(value).split("-")
    return int(body), dv
