"""
FolioAllocator -- gapless folio allocation from authorized ranges.

Responsibility:
    Hands out legal document numbers per (tenant, document type) from the
    ranges the SII authorized (CAF), registers new ranges, and records
    folios abandoned through the explicit void path.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  This is the
    pipeline's single serialization point; everything else runs per
    document.

Invariants enforced:
    - Monotonic, gapless, never reused: the locked FolioRange row is the
      sole source of truth for the next number.  The SQL
      aggregate-max-plus-one anti-pattern is FORBIDDEN.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback hands nothing out.
    - No number above end_folio is ever returned; an exhausted or expired
      range is skipped and, when none is left, the call fails without
      mutating any row.
    - A folio leaves the pool exactly once.  After allocation it ends on a
      document or in voided_folios, never back in the range.

Failure modes:
    - FolioRangeExhaustedError: no active, unexpired range with numbers left.
    - FolioRangeOverlapError: a new range intersects an existing one.
    - InvalidCafError: malformed CAF, or CAF issued to another RUT.
    - FolioAlreadyVoidedError / FolioNotAllocatedError from void_folio().

Audit relevance:
    Allocation and void events are logged with tenant, type and folio.
    Together with the voided_folios table every authorized number can be
    accounted for.
"""

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from dte_kernel.domain import rut
from dte_kernel.domain.caf import CafAuthorization, parse_caf
from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.document_types import DocumentType
from dte_kernel.exceptions import (
    FolioAlreadyVoidedError,
    FolioNotAllocatedError,
    FolioRangeExhaustedError,
    FolioRangeOverlapError,
    InvalidCafError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.folio import FolioRange, VoidedFolio
from dte_kernel.services.base import BaseService

logger = get_logger("services.folio_allocator")


class FolioAllocator(BaseService[FolioRange]):
    """
    Allocates folios under a row lock.

    Contract:
        allocate() returns the next folio for (tenant, type) within the
        allocator's SII environment.  Concurrent callers serialize on
        ``SELECT ... FOR UPDATE`` over that key's active ranges, so no two
        transactions observe the same number.

    Non-goals:
        - Does NOT call ``session.commit()``; caller controls boundaries.
        - Does NOT return numbers to the pool.  Abandoned folios are voided.

    Usage:
        with session_scope() as session:
            folio = FolioAllocator(session).allocate("acme", DocumentType.FACTURA)
            # If the transaction rolls back, the folio is not consumed
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        environment: str = "certification",
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self.environment = str(getattr(environment, "value", environment))

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        tenant_id: str,
        document_type: DocumentType | int | str,
        as_of: date | None = None,
    ) -> int:
        """
        Take the next folio for (tenant_id, document_type).

        Preconditions:
            - The caller is within an active database transaction.

        Postconditions:
            - The returned folio is strictly greater than every folio
              previously returned for this key from the same range.
            - The range row stays locked until the transaction completes.

        Args:
            tenant_id: Owning tenant.
            document_type: SII type code, enum member or alias.
            as_of: Date used for the CAF expiry check (default: today).

        Returns:
            The allocated folio number.

        Raises:
            FolioRangeExhaustedError: No usable range remains.
        """
        doc_type = DocumentType.parse(document_type)
        as_of = as_of or self._clock.today()

        # INVARIANT: row lock serializes allocation per (tenant, type).
        # populate_existing refreshes rows already in the identity map.
        ranges = self.session.execute(
            select(FolioRange)
            .where(
                FolioRange.tenant_id == tenant_id,
                FolioRange.environment == self.environment,
                FolioRange.document_type == int(doc_type),
                FolioRange.is_active.is_(True),
            )
            .order_by(FolioRange.start_folio)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        expired = 0
        for folio_range in ranges:
            if folio_range.is_exhausted:
                continue
            if folio_range.is_expired(as_of):
                expired += 1
                continue

            folio = folio_range.next_available
            # INVARIANT: never hand out a number past the authorized end
            assert folio <= folio_range.end_folio, (
                f"folio {folio} beyond range end {folio_range.end_folio}"
            )
            folio_range.next_available = folio + 1
            if folio_range.is_exhausted:
                folio_range.is_active = False
            self.session.flush()

            logger.info(
                "folio_allocated",
                extra={
                    "tenant_id": tenant_id,
                    "environment": self.environment,
                    "document_type": int(doc_type),
                    "folio": folio,
                    "range_start": folio_range.start_folio,
                    "range_end": folio_range.end_folio,
                    "remaining": folio_range.remaining,
                },
            )
            return folio

        detail = (
            f"{expired} active range(s) expired as of {as_of.isoformat()}"
            if expired
            else "no active range with folios left"
        )
        logger.warning(
            "folio_range_exhausted",
            extra={
                "tenant_id": tenant_id,
                "environment": self.environment,
                "document_type": int(doc_type),
                "expired_ranges": expired,
            },
        )
        raise FolioRangeExhaustedError(tenant_id, int(doc_type), detail=detail)

    # ------------------------------------------------------------------
    # Range registration
    # ------------------------------------------------------------------

    def register_range(
        self,
        tenant_id: str,
        document_type: DocumentType | int | str,
        start_folio: int,
        end_folio: int,
        *,
        authority_key_id: int | None = None,
        authorized_on: date | None = None,
        expires_on: date | None = None,
        caf_xml: bytes | None = None,
    ) -> FolioRange:
        """
        Add an authorized range.

        Raises:
            ValueError: If the bounds are not 1 <= start <= end.
            FolioRangeOverlapError: If any existing range for the same
                (tenant, type) shares a number with the new one.
        """
        doc_type = DocumentType.parse(document_type)
        if start_folio < 1 or end_folio < start_folio:
            raise ValueError(f"Invalid folio range {start_folio}-{end_folio}")

        overlapping = self.session.execute(
            select(FolioRange)
            .where(
                FolioRange.tenant_id == tenant_id,
                FolioRange.environment == self.environment,
                FolioRange.document_type == int(doc_type),
                FolioRange.start_folio <= end_folio,
                FolioRange.end_folio >= start_folio,
            )
            .order_by(FolioRange.start_folio)
            .with_for_update()
        ).scalars().first()
        if overlapping is not None:
            raise FolioRangeOverlapError(
                tenant_id=tenant_id,
                document_type=int(doc_type),
                start=start_folio,
                end=end_folio,
                existing_start=overlapping.start_folio,
                existing_end=overlapping.end_folio,
            )

        folio_range = FolioRange(
            tenant_id=tenant_id,
            environment=self.environment,
            document_type=int(doc_type),
            start_folio=start_folio,
            end_folio=end_folio,
            next_available=start_folio,
            authority_key_id=authority_key_id,
            authorized_on=authorized_on,
            expires_on=expires_on,
            caf_xml=caf_xml,
            is_active=True,
        )
        self.session.add(folio_range)
        self.session.flush()

        logger.info(
            "folio_range_registered",
            extra={
                "tenant_id": tenant_id,
                "environment": self.environment,
                "document_type": int(doc_type),
                "range_start": start_folio,
                "range_end": end_folio,
                "expires_on": expires_on,
                "has_caf": caf_xml is not None,
            },
        )
        return folio_range

    def register_caf(
        self,
        tenant_id: str,
        caf_xml: bytes | str,
        issuer_rut: str | None = None,
    ) -> FolioRange:
        """
        Register the range described by an SII CAF file.

        Args:
            tenant_id: Owning tenant.
            caf_xml: The AUTORIZACION document.
            issuer_rut: When given, the CAF must have been issued to it.

        Raises:
            InvalidCafError: Malformed CAF or issued to a different RUT.
            FolioRangeOverlapError: The range is already (partly) registered.
        """
        caf = parse_caf(caf_xml)
        if issuer_rut is not None and rut.normalize(caf.issuer_rut) != rut.normalize(issuer_rut):
            raise InvalidCafError(
                f"CAF issued to {caf.issuer_rut}, expected {rut.normalize(issuer_rut)}"
            )
        return self.register_range(
            tenant_id,
            caf.document_type,
            caf.range_start,
            caf.range_end,
            authority_key_id=caf.authority_key_id,
            authorized_on=caf.authorized_on,
            expires_on=caf.expires_on,
            caf_xml=caf.caf_xml,
        )

    def caf_for(
        self,
        tenant_id: str,
        document_type: DocumentType | int | str,
        folio: int,
    ) -> CafAuthorization | None:
        """Authorization covering folio, or None when its range has no CAF."""
        folio_range = self._range_containing(tenant_id, DocumentType.parse(document_type), folio)
        if folio_range is None or folio_range.caf_xml is None:
            return None
        return parse_caf(folio_range.caf_xml)

    # ------------------------------------------------------------------
    # Void path
    # ------------------------------------------------------------------

    def void_folio(
        self,
        tenant_id: str,
        document_type: DocumentType | int | str,
        folio: int,
        reason: str,
        *,
        document_id=None,
        voided_by: str | None = None,
    ) -> VoidedFolio:
        """
        Record that an allocated folio will never be used.

        Raises:
            FolioNotAllocatedError: The folio was never handed out.
            FolioAlreadyVoidedError: The folio was voided before.
            ValueError: reason is empty.
        """
        doc_type = DocumentType.parse(document_type)
        if not reason or not reason.strip():
            raise ValueError("A void reason is required")

        folio_range = self._range_containing(tenant_id, doc_type, folio)
        if folio_range is None or not folio_range.was_allocated(folio):
            raise FolioNotAllocatedError(tenant_id, int(doc_type), folio)

        existing = self.session.execute(
            select(VoidedFolio).where(
                VoidedFolio.tenant_id == tenant_id,
                VoidedFolio.environment == self.environment,
                VoidedFolio.document_type == int(doc_type),
                VoidedFolio.folio == folio,
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise FolioAlreadyVoidedError(tenant_id, int(doc_type), folio)

        voided = VoidedFolio(
            tenant_id=tenant_id,
            environment=self.environment,
            document_type=int(doc_type),
            folio=folio,
            reason=reason.strip(),
            voided_at=self._clock.now(),
            document_id=document_id,
            voided_by=voided_by,
        )
        self.session.add(voided)
        self.session.flush()

        logger.warning(
            "folio_voided",
            extra={
                "tenant_id": tenant_id,
                "document_type": int(doc_type),
                "folio": folio,
                "reason": voided.reason,
                "document_id": document_id,
            },
        )
        return voided

    def _range_containing(
        self, tenant_id: str, doc_type: DocumentType, folio: int,
    ) -> FolioRange | None:
        return self.session.execute(
            select(FolioRange).where(
                FolioRange.tenant_id == tenant_id,
                FolioRange.environment == self.environment,
                FolioRange.document_type == int(doc_type),
                FolioRange.start_folio <= folio,
                FolioRange.end_folio >= folio,
            )
        ).scalar_one_or_none()
