"""
Document types -- closed set of DTE variants and their behavior table.

Responsibility:
    Defines every document type the pipeline can issue as a member of one
    IntEnum (the value is the SII ``TipoDTE`` code) and pairs each member
    with exactly one DocumentBehavior row.  Code that needs per-type rules
    reads the row; it never branches on raw type strings.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Every DocumentType member has a behavior row (checked at import time).
    - Exempt-only types carry a zero VAT rate.

Failure modes:
    - ValueError from DocumentType.parse() on an unknown code or alias.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, IntEnum

# Statutory VAT rate (IVA) for taxed lines.
VAT_RATE = Decimal("0.19")


class DocumentType(IntEnum):
    """SII document types supported by the pipeline."""

    FACTURA = 33
    FACTURA_EXENTA = 34
    BOLETA = 39
    BOLETA_EXENTA = 41
    GUIA_DESPACHO = 52
    NOTA_DEBITO = 56
    NOTA_CREDITO = 61

    @classmethod
    def parse(cls, value: int | str | DocumentType) -> DocumentType:
        """
        Resolve a type from its SII code or a business alias.

        Accepts ``33``, ``"33"``, ``"FACTURA"`` or ``"invoice"``.
        """
        if isinstance(value, DocumentType):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        key = text.lower()
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls[text.upper()]
        except KeyError:
            raise ValueError(f"Unknown document type: {value!r}") from None

    @property
    def behavior(self) -> DocumentBehavior:
        return BEHAVIORS[self]


class TaxTreatment(str, Enum):
    """VAT treatment of a single line."""

    TAXED = "taxed"
    EXEMPT = "exempt"


@dataclass(frozen=True, slots=True)
class DocumentBehavior:
    """
    Per-type rules consulted by the builder and serializer.

    Attributes:
        name: Legal name printed on the document.
        vat_rate: Rate applied to the taxed subtotal.
        exempt_only: Every line must be exempt.
        requires_reference: At least one Referencia to a prior document.
        is_receipt: Boleta family (final consumer, no payment terms).
    """

    name: str
    vat_rate: Decimal
    exempt_only: bool = False
    requires_reference: bool = False
    is_receipt: bool = False


BEHAVIORS: dict[DocumentType, DocumentBehavior] = {
    DocumentType.FACTURA: DocumentBehavior(
        name="Factura Electrónica", vat_rate=VAT_RATE,
    ),
    DocumentType.FACTURA_EXENTA: DocumentBehavior(
        name="Factura No Afecta o Exenta Electrónica", vat_rate=Decimal("0"),
        exempt_only=True,
    ),
    DocumentType.BOLETA: DocumentBehavior(
        name="Boleta Electrónica", vat_rate=VAT_RATE, is_receipt=True,
    ),
    DocumentType.BOLETA_EXENTA: DocumentBehavior(
        name="Boleta Exenta Electrónica", vat_rate=Decimal("0"),
        exempt_only=True, is_receipt=True,
    ),
    DocumentType.GUIA_DESPACHO: DocumentBehavior(
        name="Guía de Despacho Electrónica", vat_rate=VAT_RATE,
    ),
    DocumentType.NOTA_DEBITO: DocumentBehavior(
        name="Nota de Débito Electrónica", vat_rate=VAT_RATE,
        requires_reference=True,
    ),
    DocumentType.NOTA_CREDITO: DocumentBehavior(
        name="Nota de Crédito Electrónica", vat_rate=VAT_RATE,
        requires_reference=True,
    ),
}

_ALIASES: dict[str, DocumentType] = {
    "invoice": DocumentType.FACTURA,
    "invoice_exempt": DocumentType.FACTURA_EXENTA,
    "receipt": DocumentType.BOLETA,
    "receipt_exempt": DocumentType.BOLETA_EXENTA,
    "delivery_note": DocumentType.GUIA_DESPACHO,
    "debit_note": DocumentType.NOTA_DEBITO,
    "credit_note": DocumentType.NOTA_CREDITO,
}

# INVARIANT: the behavior table covers the closed set exactly.
_missing = set(DocumentType) - set(BEHAVIORS)
if _missing:
    raise RuntimeError(f"Document types without behavior: {sorted(_missing)}")
