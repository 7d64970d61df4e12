"""
ResponseProcessor -- applies the authority's verdict to a submitted document.

Responsibility:
    Parses the SII status query response (RESPUESTA with RESP_HDR and
    RESP_BODY), maps the authority code onto accepted, rejected or still
    processing, and moves the matching document out of SUBMITTED.

Architecture position:
    Kernel > Services.  The ONLY writer of the SUBMITTED -> ACCEPTED /
    REJECTED transition.

Invariants enforced:
    - Idempotent: the document is located by track ID, and a document that
      is already terminal is left as it is.  Re-processing the same
      response, or a late duplicate, changes nothing but last_checked_at.
    - A still-processing verdict never changes the status.

Failure modes:
    - ResponseParseError: body is not XML or carries no ESTADO.
    - DocumentNotFoundError: no document holds the track ID.
"""

from lxml import etree
from sqlalchemy import select
from sqlalchemy.orm import Session

from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.dtos import DocumentStatus, StatusOutcome
from dte_kernel.exceptions import DocumentNotFoundError, ResponseParseError
from dte_kernel.logging_config import LogContext, get_logger
from dte_kernel.models.tax_document import TaxDocument, TaxDocumentStatus
from dte_kernel.services.base import BaseService
from dte_kernel.utils.xml import parse

logger = get_logger("services.response_processor")

# ESTADO values of the envelope status query.  EPR is decided by counts.
ACCEPTED_CODES = frozenset({"DOK", "DNK", "LOK"})

REJECTED_CODES = frozenset({
    "RCH",  # envelope rejected
    "RCT",  # rejected, signer not authorized
    "RFR",  # rejected, signature error
    "RSC",  # rejected, schema error
    "RCO",  # rejected, content inconsistencies
    "RPT",  # rejected, repeated envelope
    "FAU",  # sender not authorized
    "FNA",  # document not found
    "FAN",  # document annulled
    "EMP",  # company not authorized
    "TMC",  # receiver RUT changed
    "TMD",  # document type changed
    "AND",  # not registered
})

PROCESSING_CODES = frozenset({"REC", "SOK", "CRT", "FOK", "PDR", "PRD"})

PROCESSED = "EPR"

_COUNT_FIELDS = ("INFORMADOS", "ACEPTADOS", "RECHAZADOS", "REPAROS")


def _find(root, name: str) -> str | None:
    nodes = root.xpath(".//*[local-name()=$name]", name=name)
    if not nodes or nodes[0].text is None:
        return None
    return nodes[0].text.strip()


def _count(root, name: str) -> int:
    value = _find(root, name)
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


def classify(code: str, counts: dict[str, int]) -> StatusOutcome:
    """Map an ESTADO code (and EPR counts) onto the internal outcome."""
    if code == PROCESSED:
        if counts.get("RECHAZADOS", 0) > 0:
            return StatusOutcome.REJECTED
        informed = counts.get("INFORMADOS", 0)
        settled = counts.get("ACEPTADOS", 0) + counts.get("REPAROS", 0)
        if informed > 0 and settled >= informed:
            return StatusOutcome.ACCEPTED
        return StatusOutcome.PROCESSING
    if code in ACCEPTED_CODES:
        return StatusOutcome.ACCEPTED
    if code in REJECTED_CODES:
        return StatusOutcome.REJECTED
    # PROCESSING_CODES, negative query errors, and anything not listed
    return StatusOutcome.PROCESSING


def _error_details(root) -> tuple[str, ...]:
    details = []
    for node in root.xpath("//*[local-name()='DETALLE_REP_RECH' or local-name()='DETALLE']"):
        folio = _find(node, "FOLIO")
        description = _find(node, "DESC_ERR") or _find(node, "ESTADO")
        if description:
            details.append(f"folio {folio}: {description}" if folio else description)
    for node in root.xpath("//*[local-name()='ERROR']"):
        text = (node.text or "").strip()
        code = node.get("CODIGO")
        if text or code:
            details.append(f"{code}: {text}" if code else text)
    return tuple(details)


def parse_status_response(raw: bytes | str, track_id: str | None = None) -> DocumentStatus:
    """
    Parse a status query response into a DocumentStatus.

    The track ID in the body wins over the one passed in; the argument is
    the fallback for responses that do not echo it.

    Raises:
        ResponseParseError: Not XML, no ESTADO, or no track ID at all.
    """
    try:
        root = parse(raw)
    except etree.XMLSyntaxError as exc:
        raise ResponseParseError(f"not well-formed XML: {exc}", track_id=track_id) from exc

    code = _find(root, "ESTADO")
    if not code:
        raise ResponseParseError("response has no ESTADO", track_id=track_id)

    resolved_track_id = _find(root, "TRACKID") or track_id
    if not resolved_track_id:
        raise ResponseParseError("response has no TRACKID and none was given")

    counts = {name: _count(root, name) for name in _COUNT_FIELDS if _find(root, name) is not None}
    outcome = classify(code, counts)
    glosa = _find(root, "GLOSA")
    details = _error_details(root)

    reason = None
    if outcome is StatusOutcome.REJECTED:
        reason = "; ".join(part for part in (f"{code}: {glosa}" if glosa else code, *details) if part)

    return DocumentStatus(
        track_id=resolved_track_id,
        outcome=outcome,
        authority_code=code,
        reason=reason,
        details=details,
        counts=counts,
    )


class ResponseProcessor(BaseService[TaxDocument]):
    """
    Applies authority verdicts.

    Usage:
        status = ResponseProcessor(session, clock).process(raw_xml, track_id)
        session.commit()
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def process(self, raw_response: bytes | str, track_id: str | None = None) -> DocumentStatus:
        """
        Parse raw_response and apply it.

        Raises:
            ResponseParseError, DocumentNotFoundError
        """
        return self.apply(parse_status_response(raw_response, track_id))

    def apply(self, status: DocumentStatus) -> DocumentStatus:
        """
        Apply an already-parsed verdict to the document holding its track ID.

        Returns:
            The status, with observed_at set.

        Raises:
            DocumentNotFoundError: No document has this track ID.
        """
        document = self.session.execute(
            select(TaxDocument).where(TaxDocument.track_id == status.track_id)
        ).scalar_one_or_none()
        if document is None:
            logger.warning("status_for_unknown_track_id", extra={"track_id": status.track_id})
            raise DocumentNotFoundError(track_id=status.track_id)

        now = self._clock.now()
        with LogContext.bind(
            tenant_id=document.tenant_id,
            document_id=document.id,
            document_type=document.document_type,
            folio=document.folio,
            track_id=status.track_id,
        ):
            document.last_checked_at = now

            if document.is_terminal:
                logger.info(
                    "status_already_applied",
                    extra={
                        "status": document.status.value,
                        "authority_code": status.authority_code,
                    },
                )
            elif status.outcome is StatusOutcome.PROCESSING:
                logger.debug("status_still_processing", extra={"authority_code": status.authority_code})
            else:
                target = (
                    TaxDocumentStatus.ACCEPTED
                    if status.outcome is StatusOutcome.ACCEPTED
                    else TaxDocumentStatus.REJECTED
                )
                document.transition_to(target)
                document.authority_code = status.authority_code
                document.rejection_reason = status.reason
                document.resolved_at = now
                document.clear_error()
                log = logger.info if target is TaxDocumentStatus.ACCEPTED else logger.warning
                log(
                    "document_resolved",
                    extra={
                        "status": target.value,
                        "authority_code": status.authority_code,
                        "reason": status.reason,
                    },
                )

            self.session.flush()

        return DocumentStatus(
            track_id=status.track_id,
            outcome=status.outcome,
            authority_code=status.authority_code,
            reason=status.reason,
            details=status.details,
            counts=status.counts,
            observed_at=now,
        )
