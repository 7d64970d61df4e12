"""
Domain layer.

Value objects, document type behavior, RUT rules, CAF parsing and DTOs.
No ORM, no database, no network.  Time only through an injected Clock.
"""

from dte_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from dte_kernel.domain.document_types import (
    BEHAVIORS,
    VAT_RATE,
    DocumentBehavior,
    DocumentType,
    TaxTreatment,
)
from dte_kernel.domain.dtos import (
    CanonicalXml,
    Counterparty,
    DocumentStatus,
    IssuerProfile,
    LineSpec,
    ReferenceSpec,
    SourceRecord,
    StatusOutcome,
)
from dte_kernel.domain.values import Currency, Money

__all__ = [
    "BEHAVIORS",
    "VAT_RATE",
    "CanonicalXml",
    "Clock",
    "Counterparty",
    "Currency",
    "DeterministicClock",
    "DocumentBehavior",
    "DocumentStatus",
    "DocumentType",
    "IssuerProfile",
    "LineSpec",
    "Money",
    "ReferenceSpec",
    "SourceRecord",
    "StatusOutcome",
    "SystemClock",
    "TaxTreatment",
]
