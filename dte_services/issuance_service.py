"""
dte_services.issuance_service -- end-to-end issuance of tax documents.

Responsibility:
    Wires the kernel services together and runs the pipeline

        build -> allocate folio -> serialize -> sign -> submit
                                                      -> reconcile (later)

    owning the transaction boundaries between the steps.

Architecture position:
    Services -- orchestration over dte_kernel.  The only place where kernel
    services are constructed from a DteConfig and where sessions are
    committed.

Invariants enforced:
    - Tenant scope and the signing certificate are checked BEFORE a folio
      is consumed, so a bad credential never strands a number.
    - The folio and the document that consumes it are committed together,
      and that commit happens before any network I/O.  The folio row lock
      is never held across an upload.
    - After a folio is assigned the document is never dropped: a failed
      step records last_error_code / last_error_message, keeps the last
      status reached, and is committed.  The only way to abandon it is
      void().
    - Every transmission attempt is committed, successful or not.

Failure modes:
    - InvalidDocumentError, CredentialScopeError, CertificateInvalidError,
      FolioRangeExhaustedError: nothing persisted.
    - SerializationError / SchemaViolationError / SigningError after
      allocation: document kept in FOLIO_ASSIGNED with the error recorded.
    - TransmissionFailedError: document kept in SIGNED with the error
      recorded; resubmit() retries it.

Audit relevance:
    Every call runs under a LogContext carrying correlation ID, tenant,
    document, folio and track ID, so one issuance can be followed across
    all of its log lines.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from uuid import UUID, uuid4

from cryptography import x509
from sqlalchemy import select
from sqlalchemy.orm import Session

from dte_config.schema import DteConfig
from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.credentials import SigningCredentials
from dte_kernel.domain.dtos import DocumentStatus, SourceRecord, StatusOutcome
from dte_kernel.exceptions import (
    CredentialScopeError,
    DocumentNotFoundError,
    DteKernelError,
    InvalidStatusTransitionError,
)
from dte_kernel.logging_config import LogContext, get_logger
from dte_kernel.models.folio import FolioRange
from dte_kernel.models.tax_document import TaxDocument, TaxDocumentStatus
from dte_kernel.selectors.folio_selector import FolioReport, FolioSelector
from dte_kernel.services.digital_signer import DigitalSigner
from dte_kernel.services.document_builder import DocumentBuilder
from dte_kernel.services.folio_allocator import FolioAllocator
from dte_kernel.services.response_processor import ResponseProcessor
from dte_kernel.services.transmission_client import TokenProvider, TransmissionClient
from dte_kernel.services.xml_serializer import XmlSerializer

logger = get_logger("services.issuance")


def load_certificates(paths: tuple[Path, ...]) -> list[x509.Certificate]:
    """Read every certificate from a set of PEM files."""
    certificates: list[x509.Certificate] = []
    for path in paths:
        certificates.extend(x509.load_pem_x509_certificates(Path(path).read_bytes()))
    return certificates


def load_crls(paths: tuple[Path, ...]) -> list[x509.CertificateRevocationList]:
    return [x509.load_pem_x509_crl(Path(path).read_bytes()) for path in paths]


def build_signer(config: DteConfig, clock: Clock | None = None) -> DigitalSigner:
    """DigitalSigner with the certificate policy of config."""
    return DigitalSigner(
        clock=clock,
        trust_anchors=load_certificates(config.signature.trust_anchors),
        require_trusted_chain=config.signature.require_trusted_chain,
        crls=load_crls(config.signature.crls),
    )


def build_token_provider(
    config: DteConfig,
    signer: DigitalSigner,
    http=None,
    clock: Clock | None = None,
) -> TokenProvider:
    """One per process and environment; the token cache lives here."""
    return TokenProvider(
        config.endpoints,
        signer,
        config.token,
        environment=config.environment.value,
        timeout_seconds=config.transmission.timeout_seconds,
        http=http,
        clock=clock,
    )


class DocumentIssuanceService:
    """
    Issues tax documents for any tenant.

    Contract:
        The session is used exclusively by this service for the duration
        of each call; the service commits and rolls back on it.  Use one
        instance (one session) per worker thread.  Share the TokenProvider
        across instances so tokens are reused.

    Usage:
        service = DocumentIssuanceService(session, get_active_config())
        document = service.issue(record, credentials)
        ...
        status = service.reconcile(document.tenant_id, document.track_id,
                                   document.issuer_rut, credentials)
    """

    def __init__(
        self,
        session: Session,
        config: DteConfig,
        *,
        clock: Clock | None = None,
        http=None,
        sleep: Callable[[float], None] | None = None,
        signer: DigitalSigner | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        self._session = session
        self._config = config
        self._clock = clock or SystemClock()

        self.builder = DocumentBuilder(vat_rate=config.tax.vat_rate)
        self.allocator = FolioAllocator(session, self._clock, environment=config.environment.value)
        self.serializer = XmlSerializer(
            schema_path=config.schema.path,
            validate=config.schema.validate,
        )
        self.signer = signer or build_signer(config, self._clock)
        self.tokens = token_provider or build_token_provider(config, self.signer, http, self._clock)
        self.transmission = TransmissionClient(
            session,
            config.endpoints,
            self.tokens,
            config.transmission,
            config.polling,
            http=http,
            clock=self._clock,
            sleep=sleep,
        )
        self.processor = ResponseProcessor(session, self._clock)
        self.folios = FolioSelector(
            session,
            config.folios.alert_threshold_percent,
            environment=config.environment.value,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, source: SourceRecord, credentials: SigningCredentials) -> TaxDocument:
        """
        Run the full pipeline for one business record.

        Returns:
            The SUBMITTED TaxDocument, carrying its track ID.

        Raises:
            InvalidDocumentError, CredentialScopeError,
            CertificateInvalidError, FolioRangeExhaustedError,
            SerializationError, SchemaViolationError,
            TransmissionFailedError
        """
        with LogContext.bind(correlation_id=uuid4(), tenant_id=source.tenant_id):
            document = self._prepare(source, credentials)
            return self._transmit(document, credentials)

    def _prepare(self, source: SourceRecord, credentials: SigningCredentials) -> TaxDocument:
        if credentials.tenant_id != source.tenant_id:
            logger.error(
                "credential_scope_violation",
                extra={
                    "credential_tenant_id": credentials.tenant_id,
                    "document_tenant_id": source.tenant_id,
                },
            )
            raise CredentialScopeError(credentials.tenant_id, source.tenant_id)
        self.signer.check_certificate(credentials.certificate, credentials.private_key, credentials.chain)

        document = self.builder.build(source)

        try:
            folio = self.allocator.allocate(source.tenant_id, document.document_type)
            document.environment = self.allocator.environment
            document.folio = folio
            document.stamped_at = self._clock.now()
            document.transition_to(TaxDocumentStatus.FOLIO_ASSIGNED)
            self._session.add(document)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        with LogContext.bind(
            document_id=document.id,
            document_type=document.document_type,
            folio=document.folio,
        ):
            logger.info("folio_assigned", extra={"external_reference": document.external_reference})
            try:
                caf = self.allocator.caf_for(document.tenant_id, document.document_type, document.folio)
                canonical = self.serializer.serialize(document, caf)
                envelope = self.signer.sign_document(canonical, credentials)
                submission = self.serializer.build_submission_envelope(
                    [envelope.signed_xml],
                    issuer_rut=document.issuer_rut,
                    sender_rut=credentials.sender_rut or document.issuer_rut,
                    resolution_date=source.issuer.resolution_date,
                    resolution_number=source.issuer.resolution_number,
                    signed_at=document.stamped_at,
                )
                envelope.submission_xml = self.signer.sign_submission(submission, credentials)
                document.envelope = envelope
                self._session.add(envelope)
                document.transition_to(TaxDocumentStatus.SIGNED)
                self._session.commit()
            except DteKernelError as exc:
                self._record_failure(document, exc)
                raise
            except Exception:
                self._session.rollback()
                raise

            logger.info("document_ready_for_submission", extra={"xml_id": envelope.xml_id})
        return document

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def resubmit(self, tenant_id: str, document_id: UUID, credentials: SigningCredentials) -> TaxDocument:
        """
        Upload a SIGNED document again, reusing its stored signed envelope.

        Raises:
            DocumentNotFoundError, InvalidStatusTransitionError,
            CredentialScopeError, TransmissionFailedError
        """
        document = self._get(tenant_id, document_id)
        if credentials.tenant_id != tenant_id:
            raise CredentialScopeError(credentials.tenant_id, tenant_id)
        if document.status != TaxDocumentStatus.SIGNED or document.envelope is None:
            raise InvalidStatusTransitionError(
                document_id=str(document.id),
                from_status=document.status.value,
                to_status=TaxDocumentStatus.SUBMITTED.value,
            )
        with LogContext.bind(correlation_id=uuid4(), tenant_id=tenant_id):
            return self._transmit(document, credentials)

    def _transmit(self, document: TaxDocument, credentials: SigningCredentials) -> TaxDocument:
        with LogContext.bind(
            document_id=document.id,
            document_type=document.document_type,
            folio=document.folio,
        ):
            try:
                attempt = self.transmission.submit(document.envelope, credentials)
                document.track_id = attempt.track_id
                document.submitted_at = attempt.attempted_at
                document.transition_to(TaxDocumentStatus.SUBMITTED)
                document.clear_error()
                self._session.commit()
            except DteKernelError as exc:
                self._record_failure(document, exc)
                raise
            except Exception:
                self._session.rollback()
                raise

            with LogContext.bind(track_id=document.track_id):
                logger.info(
                    "document_submitted",
                    extra={"attempts": len(document.attempts), "total_amount": document.total_amount},
                )
        return document

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        tenant_id: str,
        track_id: str,
        issuer_rut: str,
        credentials: SigningCredentials,
        timeout_seconds: float | None = None,
    ) -> DocumentStatus:
        """
        Poll until the verdict for track_id is terminal or the timeout
        elapses, then apply it through the ResponseProcessor.

        A document that is already resolved is answered from the database.

        Raises:
            DocumentNotFoundError, TransmissionFailedError
        """
        document = self._session.execute(
            select(TaxDocument).where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.track_id == track_id,
            )
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(track_id=track_id)

        with LogContext.bind(correlation_id=uuid4(), tenant_id=tenant_id, track_id=track_id):
            if document.status in (TaxDocumentStatus.ACCEPTED, TaxDocumentStatus.REJECTED):
                outcome = (
                    StatusOutcome.ACCEPTED
                    if document.status == TaxDocumentStatus.ACCEPTED
                    else StatusOutcome.REJECTED
                )
                return DocumentStatus(
                    track_id=track_id,
                    outcome=outcome,
                    authority_code=document.authority_code or "",
                    reason=document.rejection_reason,
                    observed_at=document.resolved_at,
                )

            status = self.transmission.wait_for_status(
                tenant_id, track_id, issuer_rut, credentials, timeout_seconds,
            )
            try:
                applied = self.processor.apply(status)
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise
            return applied

    def process_response(self, raw_response: bytes | str, track_id: str | None = None) -> DocumentStatus:
        """Apply a status response obtained out of band (e.g. a mailbox)."""
        try:
            status = self.processor.process(raw_response, track_id)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return status

    # ------------------------------------------------------------------
    # Void and folio administration
    # ------------------------------------------------------------------

    def void(
        self,
        tenant_id: str,
        document_id: UUID,
        reason: str,
        voided_by: str | None = None,
    ) -> TaxDocument:
        """
        Abandon a document that holds a folio but was never submitted.

        The folio is recorded in voided_folios and the document moves to
        VOID.

        Raises:
            DocumentNotFoundError, InvalidStatusTransitionError,
            FolioAlreadyVoidedError, ValueError (empty reason)
        """
        document = self._get(tenant_id, document_id)
        if not document.can_transition_to(TaxDocumentStatus.VOID):
            raise InvalidStatusTransitionError(
                document_id=str(document.id),
                from_status=document.status.value,
                to_status=TaxDocumentStatus.VOID.value,
            )
        try:
            self.allocator.void_folio(
                tenant_id,
                document.document_type,
                document.folio,
                reason,
                document_id=document.id,
                voided_by=voided_by,
            )
            document.transition_to(TaxDocumentStatus.VOID)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return document

    def register_caf(self, tenant_id: str, caf_xml: bytes | str, issuer_rut: str | None = None) -> FolioRange:
        """Import an SII CAF file as a new folio range."""
        try:
            folio_range = self.allocator.register_caf(tenant_id, caf_xml, issuer_rut)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return folio_range

    def folio_report(self, tenant_id: str) -> FolioReport:
        return self.folios.report(tenant_id, self._clock.today())

    # ------------------------------------------------------------------

    def _get(self, tenant_id: str, document_id: UUID) -> TaxDocument:
        document = self._session.execute(
            select(TaxDocument).where(
                TaxDocument.tenant_id == tenant_id,
                TaxDocument.id == document_id,
            )
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(document_id=str(document_id))
        return document

    def _record_failure(self, document: TaxDocument, exc: DteKernelError) -> None:
        # Flushed attempt rows are committed together with the error.
        document.record_error(exc.code, str(exc))
        self._session.commit()
        logger.error(
            "issuance_step_failed",
            extra={
                "status": document.status.value,
                "error_code": exc.code,
                "error_message": str(exc),
            },
        )
