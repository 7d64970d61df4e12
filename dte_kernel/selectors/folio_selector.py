"""
Module: dte_kernel.selectors.folio_selector
Responsibility: Read-only folio accounting: how much of each authorized
    range is used, which ranges need renewal, and which allocated folios are
    not yet accounted for.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only.
    - A folio is accounted for when it sits on a tax document or in
      voided_folios.  Allocated folios with neither are reported as gaps.
      An auditor expects that list to be empty outside in-flight issuance.

Audit relevance:
    The folio report is what a tenant shows the authority to prove that no
    number was skipped or reused.
"""

from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select

from dte_kernel.models.folio import FolioRange, VoidedFolio
from dte_kernel.models.tax_document import TaxDocument
from dte_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class FolioRangeStatus:
    """Usage of one authorized range."""

    document_type: int
    start_folio: int
    end_folio: int
    next_available: int
    allocated: int
    remaining: int
    usage_percent: float
    is_active: bool
    expires_on: date | None
    needs_renewal: bool
    gaps: tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class FolioReport:
    """Folio accounting for one tenant."""

    tenant_id: str
    as_of: date
    ranges: tuple[FolioRangeStatus, ...]

    @property
    def gaps(self) -> tuple[int, ...]:
        return tuple(folio for r in self.ranges for folio in r.gaps)

    @property
    def needs_renewal(self) -> tuple[int, ...]:
        """Document types with at least one range at or past the threshold."""
        return tuple(sorted({r.document_type for r in self.ranges if r.needs_renewal}))


class FolioSelector(BaseSelector[FolioRange]):
    """
    Folio usage queries.

    Args:
        alert_threshold_percent: Usage at which a range is flagged for
            renewal.  Expired ranges are always flagged.
        environment: SII environment whose ranges are reported.
    """

    def __init__(self, session, alert_threshold_percent: int = 80, environment: str = "certification"):
        super().__init__(session)
        self._threshold = alert_threshold_percent
        self._environment = str(getattr(environment, "value", environment))

    def report(
        self,
        tenant_id: str,
        as_of: date,
        document_type: int | None = None,
    ) -> FolioReport:
        query = select(FolioRange).where(
            FolioRange.tenant_id == tenant_id,
            FolioRange.environment == self._environment,
        )
        if document_type is not None:
            query = query.where(FolioRange.document_type == int(document_type))
        ranges = self.session.execute(
            query.order_by(FolioRange.document_type, FolioRange.start_folio)
        ).scalars().all()

        accounted = self._accounted_folios(tenant_id)
        statuses = []
        for folio_range in ranges:
            used = accounted.get(folio_range.document_type, set())
            gaps = tuple(
                folio
                for folio in range(folio_range.start_folio, folio_range.next_available)
                if folio not in used
            )
            usage = round(100.0 * folio_range.allocated_count / folio_range.size, 2)
            expired = folio_range.is_expired(as_of)
            statuses.append(
                FolioRangeStatus(
                    document_type=folio_range.document_type,
                    start_folio=folio_range.start_folio,
                    end_folio=folio_range.end_folio,
                    next_available=folio_range.next_available,
                    allocated=folio_range.allocated_count,
                    remaining=folio_range.remaining,
                    usage_percent=usage,
                    is_active=folio_range.is_active,
                    expires_on=folio_range.expires_on,
                    needs_renewal=expired or usage >= self._threshold,
                    gaps=gaps,
                )
            )
        return FolioReport(tenant_id=tenant_id, as_of=as_of, ranges=tuple(statuses))

    def remaining(self, tenant_id: str, document_type: int, as_of: date) -> int:
        """Folios still available for new documents of document_type."""
        ranges = self.session.execute(
            select(FolioRange).where(
                FolioRange.tenant_id == tenant_id,
                FolioRange.environment == self._environment,
                FolioRange.document_type == int(document_type),
                FolioRange.is_active.is_(True),
            )
        ).scalars().all()
        return sum(r.remaining for r in ranges if not r.is_expired(as_of))

    def _accounted_folios(self, tenant_id: str) -> dict[int, set[int]]:
        accounted: dict[int, set[int]] = {}
        on_documents = self.session.execute(
            select(TaxDocument.document_type, TaxDocument.folio).where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.environment == self._environment,
                TaxDocument.folio.is_not(None),
            )
        ).all()
        voided = self.session.execute(
            select(VoidedFolio.document_type, VoidedFolio.folio).where(
                VoidedFolio.tenant_id == tenant_id,
                VoidedFolio.environment == self._environment,
            )
        ).all()
        for document_type, folio in (*on_documents, *voided):
            accounted.setdefault(document_type, set()).add(folio)
        return accounted
