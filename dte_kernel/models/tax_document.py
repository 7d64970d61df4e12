"""
Module: dte_kernel.models.tax_document
Responsibility: ORM persistence for tax documents, their line items and
    their references to prior documents, plus the document lifecycle table.
Architecture position: Kernel > Models.  May import from db/base.py, the
    exceptions module and domain enums only.

Invariants enforced:
    - Lifecycle moves only along ALLOWED_TRANSITIONS
      (draft -> folio_assigned -> signed -> submitted -> accepted|rejected,
      folio_assigned|signed -> void).  transition_to() refuses anything else.
    - (tenant_id, document_type, folio) is unique once a folio is assigned.
    - Lines and references belong to exactly one document
      (cascade delete-orphan) and are frozen once the document leaves draft.
    - Terminal documents (accepted, rejected, void) are immutable
      (listeners in db/immutability.py).

Failure modes:
    - InvalidStatusTransitionError from transition_to().
    - IntegrityError on a duplicate folio.

Audit relevance:
    The issuer, receiver and totals are stored as a snapshot at build time,
    so the persisted row always matches what was serialized and signed even
    if the tenant's master data changes later.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dte_kernel.db.base import Base, TrackedBase, UUIDString
from dte_kernel.domain.document_types import DocumentType, TaxTreatment
from dte_kernel.exceptions import InvalidStatusTransitionError

if TYPE_CHECKING:
    from dte_kernel.models.signed_envelope import SignedEnvelope
    from dte_kernel.models.transmission import TransmissionAttempt


class TaxDocumentStatus(str, Enum):
    """Lifecycle status of a tax document.

    Contract: Transitions follow ALLOWED_TRANSITIONS; nothing moves backward.
    """

    DRAFT = "draft"
    FOLIO_ASSIGNED = "folio_assigned"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    VOID = "void"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TaxDocumentStatus.ACCEPTED,
    TaxDocumentStatus.REJECTED,
    TaxDocumentStatus.VOID,
})

ALLOWED_TRANSITIONS: dict[TaxDocumentStatus, frozenset[TaxDocumentStatus]] = {
    TaxDocumentStatus.DRAFT: frozenset({TaxDocumentStatus.FOLIO_ASSIGNED}),
    TaxDocumentStatus.FOLIO_ASSIGNED: frozenset({
        TaxDocumentStatus.SIGNED,
        TaxDocumentStatus.VOID,
    }),
    TaxDocumentStatus.SIGNED: frozenset({
        TaxDocumentStatus.SUBMITTED,
        TaxDocumentStatus.VOID,
    }),
    TaxDocumentStatus.SUBMITTED: frozenset({
        TaxDocumentStatus.ACCEPTED,
        TaxDocumentStatus.REJECTED,
    }),
    TaxDocumentStatus.ACCEPTED: frozenset(),
    TaxDocumentStatus.REJECTED: frozenset(),
    TaxDocumentStatus.VOID: frozenset(),
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class TaxDocument(TrackedBase):
    """
    A tax document (DTE) and its lifecycle state.

    Contract:
        Created transient in DRAFT by the DocumentBuilder.  It is persisted
        in the same transaction that assigns its folio, so an abandoned draft
        costs nothing.  Only the ResponseProcessor moves it out of SUBMITTED.

    Guarantees:
        - folio is None exactly while status is DRAFT.
        - track_id is set once status reaches SUBMITTED.
        - last_error_code / last_error_message describe the most recent
          failed step; the status remains the last one successfully reached.
    """

    __tablename__ = "tax_documents"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "environment", "document_type", "folio",
            name="uq_tax_document_folio",
        ),
        Index("idx_tax_document_track_id", "track_id"),
        Index("idx_tax_document_status", "tenant_id", "status"),
    )

    # SII environment whose folio ranges number this document
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="certification")

    document_type: Mapped[int] = mapped_column(Integer, nullable=False)

    folio: Mapped[int | None] = mapped_column(nullable=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Signing timestamp printed as TmstFirma, fixed at folio assignment
    stamped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CLP")

    # Issuer snapshot (Emisor)
    issuer_rut: Mapped[str] = mapped_column(String(12), nullable=False)
    issuer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    issuer_activity: Mapped[str] = mapped_column(String(80), nullable=False)
    issuer_activity_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    issuer_address: Mapped[str] = mapped_column(String(70), nullable=False)
    issuer_commune: Mapped[str] = mapped_column(String(20), nullable=False)
    issuer_branch_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Receiver snapshot (Receptor)
    receiver_rut: Mapped[str] = mapped_column(String(12), nullable=False)
    receiver_name: Mapped[str] = mapped_column(String(100), nullable=False)
    receiver_activity: Mapped[str | None] = mapped_column(String(40), nullable=True)
    receiver_address: Mapped[str | None] = mapped_column(String(70), nullable=True)
    receiver_commune: Mapped[str | None] = mapped_column(String(20), nullable=True)

    payment_method: Mapped[int | None] = mapped_column(Integer, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Totals, rounded once to the currency minor unit
    net_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    exempt_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    vat_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    status: Mapped[TaxDocumentStatus] = mapped_column(
        SAEnum(
            TaxDocumentStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
        default=TaxDocumentStatus.DRAFT,
    )

    # Authority bookkeeping
    track_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    authority_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Most recent failure of a pipeline step
    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Caller's own identifier for the business record
    external_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    lines: Mapped[list["TaxDocumentLine"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="TaxDocumentLine.line_number",
        lazy="selectin",
    )

    references: Mapped[list["TaxDocumentReference"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="TaxDocumentReference.line_number",
        lazy="selectin",
    )

    envelope: Mapped["SignedEnvelope | None"] = relationship(
        back_populates="document",
        uselist=False,
        lazy="selectin",
    )

    attempts: Mapped[list["TransmissionAttempt"]] = relationship(
        back_populates="document",
        order_by="TransmissionAttempt.attempt_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<TaxDocument type={self.document_type} folio={self.folio} "
            f"status={self.status.value if self.status else None}>"
        )

    @property
    def doc_type(self) -> DocumentType:
        return DocumentType(self.document_type)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition_to(self, new_status: TaxDocumentStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, new_status: TaxDocumentStatus) -> None:
        """
        Move to new_status.

        Raises:
            InvalidStatusTransitionError: If the lifecycle table forbids it.
        """
        if not self.can_transition_to(new_status):
            raise InvalidStatusTransitionError(
                document_id=str(self.id),
                from_status=self.status.value,
                to_status=new_status.value,
            )
        self.status = new_status

    def record_error(self, code: str, message: str) -> None:
        self.last_error_code = code
        self.last_error_message = message

    def clear_error(self) -> None:
        self.last_error_code = None
        self.last_error_message = None


class TaxDocumentLine(Base):
    """
    One line item (Detalle), owned by exactly one TaxDocument.

    line_total is quantity * unit_price at full precision.  MontoItem prints
    it rounded to the currency's minor unit, while the document totals are
    rounded once from the unrounded sums.
    """

    __tablename__ = "tax_document_lines"

    __table_args__ = (
        UniqueConstraint("document_id", "line_number", name="uq_tax_document_line_number"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    description: Mapped[str] = mapped_column(String(80), nullable=False)

    detail: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit: Mapped[str | None] = mapped_column(String(4), nullable=True)

    unit_price: Mapped[Decimal] = mapped_column(nullable=False)

    tax_treatment: Mapped[TaxTreatment] = mapped_column(
        SAEnum(
            TaxTreatment,
            native_enum=False,
            length=10,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=TaxTreatment.TAXED,
    )

    # Twelve places so quantity * unit_price is stored exactly
    line_total: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)

    document: Mapped["TaxDocument"] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<TaxDocumentLine {self.line_number} {self.description!r} total={self.line_total}>"

    @property
    def is_exempt(self) -> bool:
        return self.tax_treatment == TaxTreatment.EXEMPT


class TaxDocumentReference(Base):
    """A reference (Referencia) to a prior document, owned by one TaxDocument."""

    __tablename__ = "tax_document_references"

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    referenced_type: Mapped[int] = mapped_column(Integer, nullable=False)

    referenced_folio: Mapped[int] = mapped_column(nullable=False)

    referenced_date: Mapped[date] = mapped_column(Date, nullable=False)

    # CodRef: 1 annuls, 2 corrects text, 3 corrects amounts
    reference_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    reason: Mapped[str] = mapped_column(String(90), nullable=False)

    document: Mapped["TaxDocument"] = relationship(back_populates="references")
