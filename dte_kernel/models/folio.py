"""
Module: dte_kernel.models.folio
Responsibility: ORM persistence for authorized folio ranges (one row per CAF)
    and for folios that were explicitly voided after allocation.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - start_folio >= 1 and end_folio >= start_folio (CHECK constraints).
    - next_available stays within [start_folio, end_folio + 1]; the upper
      bound means "exhausted" (CHECK constraint).  No number above
      end_folio is ever handed out.
    - next_available never decreases and the bounds never change once the
      range exists (ORM listeners in db/immutability.py).
    - A folio is voided at most once per (tenant, environment, type)
      (UNIQUE constraint).
    - Ranges, voids and the documents using them are scoped by SII
      environment; a certification CAF never numbers a production document.
    - VoidedFolio rows are append-only.

Failure modes:
    - IntegrityError on CHECK / UNIQUE violations.
    - ImmutabilityViolationError when a listener blocks an update.

Audit relevance:
    The authority requires that folios are never skipped or reused.  The
    range counter plus the void log let an auditor account for every number
    in every authorized range: it is either on a document or voided.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from dte_kernel.db.base import TrackedBase, UUIDString


class FolioRange(TrackedBase):
    """
    One authorized folio range for (tenant, environment, document type).

    Contract:
        The FolioAllocator is the only writer of next_available, and it
        writes only while holding a row lock on this row.

    Guarantees:
        - Numbers handed out from this row are start_folio .. end_folio,
          in order, each exactly once.
    """

    __tablename__ = "folio_ranges"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "environment", "document_type", "start_folio",
            name="uq_folio_range_start",
        ),
        CheckConstraint("start_folio >= 1", name="ck_folio_range_start_positive"),
        CheckConstraint("end_folio >= start_folio", name="ck_folio_range_bounds"),
        CheckConstraint(
            "next_available >= start_folio AND next_available <= end_folio + 1",
            name="ck_folio_range_next_available",
        ),
        Index("idx_folio_range_lookup", "tenant_id", "environment", "document_type", "is_active"),
    )

    # SII environment the CAF was issued in; ranges never cross environments
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="certification")

    # SII TipoDTE code
    document_type: Mapped[int] = mapped_column(Integer, nullable=False)

    start_folio: Mapped[int] = mapped_column(nullable=False)

    end_folio: Mapped[int] = mapped_column(nullable=False)

    # Next number to hand out; end_folio + 1 once exhausted
    next_available: Mapped[int] = mapped_column(nullable=False)

    # CAF metadata
    authority_key_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    authorized_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    expires_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    caf_xml: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return (
            f"<FolioRange type={self.document_type} "
            f"{self.start_folio}-{self.end_folio} next={self.next_available}>"
        )

    @property
    def size(self) -> int:
        return self.end_folio - self.start_folio + 1

    @property
    def allocated_count(self) -> int:
        return self.next_available - self.start_folio

    @property
    def remaining(self) -> int:
        return self.end_folio - self.next_available + 1

    @property
    def is_exhausted(self) -> bool:
        return self.next_available > self.end_folio

    def contains(self, folio: int) -> bool:
        return self.start_folio <= folio <= self.end_folio

    def was_allocated(self, folio: int) -> bool:
        return self.start_folio <= folio < self.next_available

    def is_expired(self, on: date) -> bool:
        return self.expires_on is not None and on > self.expires_on


class VoidedFolio(TrackedBase):
    """
    Append-only record of an allocated folio abandoned through the void path.

    Guarantees:
        - Never updated or deleted after insert.
    """

    __tablename__ = "voided_folios"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "environment", "document_type", "folio",
            name="uq_voided_folio",
        ),
    )

    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="certification")

    document_type: Mapped[int] = mapped_column(Integer, nullable=False)

    folio: Mapped[int] = mapped_column(nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    voided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Document that held the folio, when there was one
    document_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    voided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<VoidedFolio type={self.document_type} folio={self.folio}>"
