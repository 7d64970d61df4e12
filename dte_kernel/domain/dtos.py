"""
DTOs -- Immutable data structures flowing through the issuance pipeline.

Responsibility:
    Defines the inbound business record (SourceRecord and its parts), the
    parties printed on a document, the canonical XML artifact handed from
    serializer to signer, and the DocumentStatus returned by status polling
    and response processing.

Architecture position:
    Kernel > Domain -- pure, zero I/O, no ORM imports.

Invariants enforced:
    - Inbound DTOs do NOT validate business rules in __post_init__.  The
      document builder validates them as a whole so that every violation is
      reported together.

Data flow:
    SourceRecord -> TaxDocument (ORM) -> CanonicalXml -> SignedEnvelope
    raw authority response -> DocumentStatus
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from dte_kernel.domain.document_types import DocumentType, TaxTreatment
from dte_kernel.utils.hashing import sha256_hex


@dataclass(frozen=True)
class IssuerProfile:
    """
    The tenant as it appears in the Emisor block and the EnvioDTE Caratula.

    resolution_date / resolution_number identify the SII resolution that
    authorized the tenant as an electronic issuer (FchResol / NroResol).
    """

    rut: str
    legal_name: str
    activity: str
    address: str
    commune: str
    activity_code: int | None = None
    branch_code: int | None = None
    resolution_date: date | None = None
    resolution_number: int = 0


@dataclass(frozen=True)
class Counterparty:
    """Receiver of the document (Receptor)."""

    rut: str | None
    legal_name: str
    activity: str | None = None
    address: str | None = None
    commune: str | None = None


@dataclass(frozen=True)
class LineSpec:
    """One priced line of the business record."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_treatment: TaxTreatment = TaxTreatment.TAXED
    detail: str | None = None
    unit: str | None = None


@dataclass(frozen=True)
class ReferenceSpec:
    """A prior document referenced by a credit or debit note."""

    document_type: int
    folio: int
    document_date: date
    reason: str
    reference_code: int | None = None


@dataclass(frozen=True)
class SourceRecord:
    """
    Fully-priced business record handed in by the surrounding application.

    tenant_id is explicit: the pipeline never infers it from ambient state.
    """

    tenant_id: str
    document_type: DocumentType | int | str
    issue_date: date
    issuer: IssuerProfile
    counterparty: Counterparty
    lines: tuple[LineSpec, ...]
    currency: str = "CLP"
    references: tuple[ReferenceSpec, ...] = ()
    payment_method: int | None = None
    due_date: date | None = None
    external_reference: str | None = None


@dataclass(frozen=True)
class CanonicalXml:
    """
    Canonical (C14N 1.0) bytes of an unsigned DTE.

    content is the exact byte sequence the signer digests; document_id is the
    ``Documento/@ID`` the signature reference points at.
    """

    content: bytes
    document_id: str
    tenant_id: str
    document_type: int
    folio: int

    @property
    def sha256(self) -> str:
        return sha256_hex(self.content)


class StatusOutcome(str, Enum):
    """Internal taxonomy for authority verdicts."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PROCESSING = "processing"

    @property
    def is_terminal(self) -> bool:
        return self is not StatusOutcome.PROCESSING


@dataclass(frozen=True)
class DocumentStatus:
    """
    Authority verdict for one track ID.

    authority_code is the raw SII code (EPR, RCH, ...); reason carries the
    authority's description plus any per-document error details when the
    outcome is REJECTED.
    """

    track_id: str
    outcome: StatusOutcome
    authority_code: str
    reason: str | None = None
    details: tuple[str, ...] = field(default_factory=tuple)
    counts: dict[str, int] = field(default_factory=dict)
    observed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome.is_terminal
