"""
Module: dte_kernel.selectors.document_selector
Responsibility: Read-only lookup of tax documents and their transmission
    history, returned as DTOs.
Architecture position: Kernel > Selectors.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from dte_kernel.models.tax_document import TaxDocument, TaxDocumentStatus
from dte_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class AttemptDTO:
    attempt_number: int
    attempted_at: datetime
    outcome: str
    http_status: int | None
    authority_code: str | None
    track_id: str | None
    transient: bool | None
    error_detail: str | None


@dataclass(frozen=True)
class DocumentDTO:
    """Snapshot of a tax document for callers outside the kernel."""

    id: UUID
    tenant_id: str
    environment: str
    document_type: int
    folio: int | None
    issue_date: date
    status: TaxDocumentStatus
    total_amount: Decimal
    track_id: str | None
    authority_code: str | None
    rejection_reason: str | None
    last_error_code: str | None
    last_error_message: str | None
    attempts: tuple[AttemptDTO, ...]


class DocumentSelector(BaseSelector[TaxDocument]):
    """Tax document queries.  Every lookup is scoped by tenant."""

    def get(self, tenant_id: str, document_id: UUID) -> DocumentDTO | None:
        document = self.session.execute(
            select(TaxDocument).where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.id == document_id,
            )
        ).scalar_one_or_none()
        return self._to_dto(document) if document else None

    def by_track_id(self, tenant_id: str, track_id: str) -> DocumentDTO | None:
        document = self.session.execute(
            select(TaxDocument).where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.track_id == track_id,
            )
        ).scalar_one_or_none()
        return self._to_dto(document) if document else None

    def by_folio(
        self,
        tenant_id: str,
        document_type: int,
        folio: int,
        environment: str = "certification",
    ) -> DocumentDTO | None:
        document = self.session.execute(
            select(TaxDocument).where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.environment == str(getattr(environment, "value", environment)),
                TaxDocument.document_type == int(document_type),
                TaxDocument.folio == folio,
            )
        ).scalar_one_or_none()
        return self._to_dto(document) if document else None

    def pending(self, tenant_id: str) -> list[DocumentDTO]:
        """Documents submitted and still waiting for a verdict, oldest first."""
        documents = self.session.execute(
            select(TaxDocument)
            .where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.status == TaxDocumentStatus.SUBMITTED,
            )
            .order_by(TaxDocument.submitted_at)
        ).scalars().all()
        return [self._to_dto(d) for d in documents]

    @staticmethod
    def _to_dto(document: TaxDocument) -> DocumentDTO:
        return DocumentDTO(
            id=document.id,
            tenant_id=document.tenant_id,
            environment=document.environment,
            document_type=document.document_type,
            folio=document.folio,
            issue_date=document.issue_date,
            status=document.status,
            total_amount=document.total_amount,
            track_id=document.track_id,
            authority_code=document.authority_code,
            rejection_reason=document.rejection_reason,
            last_error_code=document.last_error_code,
            last_error_message=document.last_error_message,
            attempts=tuple(
                AttemptDTO(
                    attempt_number=a.attempt_number,
                    attempted_at=a.attempted_at,
                    outcome=a.outcome.value,
                    http_status=a.http_status,
                    authority_code=a.authority_code,
                    track_id=a.track_id,
                    transient=a.transient,
                    error_detail=a.error_detail,
                )
                for a in document.attempts
            ),
        )
