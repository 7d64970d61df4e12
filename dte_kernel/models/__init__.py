"""ORM models for the DTE issuance pipeline."""

from dte_kernel.models.folio import FolioRange, VoidedFolio
from dte_kernel.models.signed_envelope import SignedEnvelope
from dte_kernel.models.tax_document import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    TaxDocument,
    TaxDocumentLine,
    TaxDocumentReference,
    TaxDocumentStatus,
)
from dte_kernel.models.transmission import AttemptOutcome, TransmissionAttempt

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AttemptOutcome",
    "FolioRange",
    "SignedEnvelope",
    "TERMINAL_STATUSES",
    "TaxDocument",
    "TaxDocumentLine",
    "TaxDocumentReference",
    "TaxDocumentStatus",
    "TransmissionAttempt",
    "VoidedFolio",
]
