"""Deterministic hashing used for config checksums and stored digests."""

from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest

from dte_kernel.utils.hashing import canonicalize_json, hash_payload, sha256_hex


class TestHashing:

    def test_key_order_does_not_matter(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_decimal_scale_does_not_matter(self):
        assert hash_payload({"rate": Decimal("0.19")}) == hash_payload({"rate": Decimal("0.190")})

    def test_canonical_form(self):
        payload = {
            "on": date(2024, 1, 15),
            "id": UUID("12345678-1234-5678-1234-567812345678"),
            "raw": b"\x01\xff",
        }

        assert canonicalize_json(payload) == (
            '{"id":"12345678-1234-5678-1234-567812345678","on":"2024-01-15","raw":"01ff"}'
        )

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            canonicalize_json({"value": object()})

    def test_sha256_hex_of_text_and_bytes(self):
        assert sha256_hex("abc") == sha256_hex(b"abc")
        assert sha256_hex(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
