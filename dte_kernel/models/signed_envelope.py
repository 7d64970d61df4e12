"""
Module: dte_kernel.models.signed_envelope
Responsibility: ORM persistence for the signed form of a tax document: the
    canonical XML that was digested, the document with its enveloped
    signature, the signature block alone, the certificate chain, and the
    signed EnvioDTE that is uploaded to the authority.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Exactly one envelope per document (UNIQUE document_id).
    - Immutable from creation: never updated, never deleted
      (listeners in db/immutability.py).

Audit relevance:
    The stored bytes are exactly what was signed and sent.  Verifying
    signed_xml against certificate_chain reproduces the issuer's signature
    without any external lookup.
"""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dte_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from dte_kernel.models.tax_document import TaxDocument


class SignedEnvelope(TrackedBase):
    """
    Signed artifacts of one tax document.

    Guarantees:
        - canonical_sha256 identifies the unsigned canonical bytes.
        - certificate_chain is leaf-first PEM.
        - Never mutated after insert.
    """

    __tablename__ = "signed_envelopes"

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("tax_documents.id"),
        nullable=False,
        unique=True,
    )

    # Documento/@ID the signature references
    xml_id: Mapped[str] = mapped_column(String(40), nullable=False)

    canonical_xml: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    canonical_sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    signed_xml: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    signature_xml: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    digest_value: Mapped[str] = mapped_column(String(100), nullable=False)

    signature_value: Mapped[str] = mapped_column(Text, nullable=False)

    certificate_chain: Mapped[list] = mapped_column(JSON, nullable=False)

    certificate_subject: Mapped[str] = mapped_column(String(500), nullable=False)

    certificate_serial: Mapped[str] = mapped_column(String(100), nullable=False)

    certificate_not_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Signed EnvioDTE wrapping signed_xml, as uploaded
    submission_xml: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    signed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    document: Mapped["TaxDocument"] = relationship(back_populates="envelope")

    def __repr__(self) -> str:
        return f"<SignedEnvelope {self.xml_id} digest={self.digest_value}>"
