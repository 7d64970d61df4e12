"""Document type resolution and the behavior table."""

from decimal import Decimal

import pytest

from dte_kernel.domain.document_types import BEHAVIORS, VAT_RATE, DocumentType


class TestDocumentTypeParse:

    @pytest.mark.parametrize(
        "value, expected",
        [
            (33, DocumentType.FACTURA),
            ("61", DocumentType.NOTA_CREDITO),
            ("FACTURA_EXENTA", DocumentType.FACTURA_EXENTA),
            ("receipt", DocumentType.BOLETA),
            ("credit_note", DocumentType.NOTA_CREDITO),
            (DocumentType.GUIA_DESPACHO, DocumentType.GUIA_DESPACHO),
        ],
    )
    def test_resolves(self, value, expected):
        assert DocumentType.parse(value) is expected

    def test_unknown_code(self):
        with pytest.raises(ValueError):
            DocumentType.parse(99)

    def test_unknown_alias(self):
        with pytest.raises(ValueError):
            DocumentType.parse("purchase_order")


class TestBehaviorTable:

    def test_every_type_has_a_row(self):
        assert set(BEHAVIORS) == set(DocumentType)

    def test_exempt_only_types_have_zero_rate(self):
        for doc_type, behavior in BEHAVIORS.items():
            if behavior.exempt_only:
                assert behavior.vat_rate == Decimal("0"), doc_type

    def test_notes_require_references(self):
        assert DocumentType.NOTA_CREDITO.behavior.requires_reference
        assert DocumentType.NOTA_DEBITO.behavior.requires_reference
        assert not DocumentType.FACTURA.behavior.requires_reference

    def test_factura_charges_statutory_vat(self):
        assert DocumentType.FACTURA.behavior.vat_rate == VAT_RATE == Decimal("0.19")

    def test_boletas_are_receipts(self):
        assert DocumentType.BOLETA.behavior.is_receipt
        assert DocumentType.BOLETA_EXENTA.behavior.is_receipt
