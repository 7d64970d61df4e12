"""
RUT parsing and check digit tests.

Verifies:
- Modulo-11 check digit, including the K and 0 cases
- Accepted notations normalize to BODY-DV
- Malformed input is rejected, not guessed
"""

import pytest

from dte_kernel.domain import rut


class TestCheckDigit:
    """Modulo-11 check digit."""

    @pytest.mark.parametrize(
        "body, expected",
        [
            ("76086428", "5"),
            ("12345678", "5"),
            ("11111111", "1"),
            ("60803000", "K"),
            ("66666666", "6"),
        ],
    )
    def test_known_check_digits(self, body, expected):
        assert rut.check_digit(body) == expected

    def test_remainder_eleven_maps_to_zero(self):
        bodies = [str(n) for n in range(1, 200) if rut.check_digit(n) == "0"]
        assert bodies, "some body in 1..199 must have check digit 0"
        for body in bodies:
            assert rut.is_valid(f"{body}-0")


class TestNormalize:
    """Canonical BODY-DV form."""

    def test_dots_and_lowercase_k(self):
        assert rut.normalize("60.803.000-k") == "60803000-K"

    def test_without_hyphen(self):
        assert rut.normalize("760864285") == "76086428-5"

    def test_leading_zeros_dropped(self):
        assert rut.normalize("01111111-1") == "1111111-1"

    def test_malformed_raises(self):
        with pytest.raises(ValueError):
            rut.normalize("ABC-1")

    def test_none_raises(self):
        with pytest.raises(ValueError):
            rut.normalize(None)


class TestIsValid:
    """Validity combines shape and check digit."""

    def test_valid(self):
        assert rut.is_valid("76.086.428-5")

    def test_wrong_check_digit(self):
        assert not rut.is_valid("76086428-4")

    def test_empty(self):
        assert not rut.is_valid("")
        assert not rut.is_valid(None)

    def test_split(self):
        assert rut.split("60.803.000-K") == (60803000, "K")

    def test_authority_and_final_consumer_constants_are_valid(self):
        assert rut.is_valid(rut.SII_RUT)
        assert rut.is_valid(rut.FINAL_CONSUMER_RUT)
