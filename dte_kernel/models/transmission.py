"""
Module: dte_kernel.models.transmission
Responsibility: ORM persistence for the append-only log of upload attempts
    made for each tax document.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (document_id, attempt_number) is unique; attempt numbers are 1, 2, ...
      per document in the order the attempts were made.
    - Rows are never updated or deleted (listeners in db/immutability.py).

Audit relevance:
    Every call to the authority, successful or not, leaves a row with the
    HTTP status, authority code and a SHA-256 reference to the raw response,
    which is what a compliance review asks for.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dte_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from dte_kernel.models.tax_document import TaxDocument


class AttemptOutcome(str, Enum):
    """Result of a single upload attempt."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"


class TransmissionAttempt(TrackedBase):
    """One upload attempt for one document."""

    __tablename__ = "transmission_attempts"

    __table_args__ = (
        UniqueConstraint("document_id", "attempt_number", name="uq_transmission_attempt_number"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_documents.id"),
        nullable=False,
        index=True,
    )

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)

    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    outcome: Mapped[AttemptOutcome] = mapped_column(
        SAEnum(
            AttemptOutcome,
            native_enum=False,
            length=10,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )

    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Upload receipt STATUS code
    authority_code: Mapped[str | None] = mapped_column(String(10), nullable=True)

    track_id: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # Whether a failure was classified retryable; None on success
    transient: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    response_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    document: Mapped["TaxDocument"] = relationship(back_populates="attempts")

    def __repr__(self) -> str:
        return (
            f"<TransmissionAttempt #{self.attempt_number} {self.outcome.value} "
            f"http={self.http_status} code={self.authority_code}>"
        )

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS
