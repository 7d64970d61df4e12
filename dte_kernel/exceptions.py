"""
Typed Exception Hierarchy for the DTE Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The issuance pipeline has several failure classes that callers must handle
very differently: a caller-fixable document defect, an operational stop
(no folios left, certificate expired), an internal serializer bug, and a
remote endpoint that is temporarily unavailable.  Parsing messages to tell
them apart is fragile, so every failure has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE attribute (machine-readable, API-safe)
  3. Structured DATA attributes (folio, track ID, violations, ...)

Example - RIGHT way:
    try:
        document = issuance.issue(record, credentials)
    except InvalidDocumentError as e:
        return {"error": e.code, "violations": e.violations}
    except FolioRangeExhaustedError as e:
        alert_operations(e.tenant_id, e.document_type)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from DteKernelError:

    DteKernelError (base)
    |
    +-- DocumentError
    |   +-- InvalidDocumentError
    |   +-- DocumentNotFoundError
    |   +-- InvalidStatusTransitionError
    |
    +-- FolioError
    |   +-- FolioRangeExhaustedError
    |   +-- FolioRangeOverlapError
    |   +-- FolioAlreadyVoidedError
    |   +-- FolioNotAllocatedError
    |   +-- InvalidCafError
    |
    +-- SerializationError
    |   +-- SchemaViolationError
    |
    +-- SigningError
    |   +-- CertificateInvalidError
    |   +-- CredentialScopeError
    |   +-- SignatureVerificationError
    |
    +-- TransmissionError
    |   +-- TransmissionFailedError
    |   +-- AuthenticationError
    |
    +-- ResponseError
    |   +-- ResponseParseError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Document        | INVALID_DOCUMENT            | Builder found one or more violations
                | DOCUMENT_NOT_FOUND          | No document for the ID / track ID
                | INVALID_STATUS_TRANSITION   | Lifecycle step not allowed from status
----------------|-----------------------------|-----------------------------------------
Folio           | FOLIO_RANGE_EXHAUSTED       | No usable authorized range left
                | FOLIO_RANGE_OVERLAP         | New range intersects an existing one
                | FOLIO_ALREADY_VOIDED        | Folio was voided before
                | FOLIO_NOT_ALLOCATED         | Voiding a folio never handed out
                | INVALID_CAF                 | CAF file malformed or inconsistent
----------------|-----------------------------|-----------------------------------------
Serialization   | SCHEMA_VIOLATION            | Serializer output fails the XSD
----------------|-----------------------------|-----------------------------------------
Signing         | CERTIFICATE_INVALID         | Expired, not yet valid, untrusted chain
                | CREDENTIAL_SCOPE_VIOLATION  | Credentials belong to another tenant
                | SIGNATURE_VERIFICATION_FAILED | Digest or signature does not match
----------------|-----------------------------|-----------------------------------------
Transmission    | TRANSMISSION_FAILED         | Upload/status call failed (transient or
                |                             | permanent, see .transient)
                | AUTHENTICATION_FAILED       | Seed/token exchange rejected
----------------|-----------------------------|-----------------------------------------
Response        | RESPONSE_PARSE_ERROR        | Authority response is not parseable
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an append-only record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. TRANSIENT VS PERMANENT TRANSMISSION FAILURES:

    except TransmissionFailedError as e:
        if e.transient:
            schedule_resubmit(e.document_id)   # still 'signed'
        else:
            open_ticket(e.document_id, e.authority_code)

2. OPERATIONAL STOPS (no retry by the same call):

    except (FolioRangeExhaustedError, CertificateInvalidError) as e:
        notify_operator(e.code, e)

3. INTERNAL BUGS (never retried):

    except SchemaViolationError as e:
        log.error("serializer_bug", extra={"path": e.element_path})
        raise

===============================================================================
"""


class DteKernelError(Exception):
    """
    Base exception for all DTE kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "DTE_KERNEL_ERROR"


# Document exceptions


class DocumentError(DteKernelError):
    """Base exception for tax document errors."""

    code: str = "DOCUMENT_ERROR"


class InvalidDocumentError(DocumentError):
    """
    The source record cannot produce a valid tax document.

    Carries EVERY violated constraint, not just the first one found, so the
    caller can fix the record in a single pass.
    """

    code: str = "INVALID_DOCUMENT"

    def __init__(self, violations: list[str], document_type: str | None = None):
        self.violations = list(violations)
        self.document_type = document_type
        super().__init__(
            f"Invalid document ({len(self.violations)} violation(s)): "
            + "; ".join(self.violations)
        )


class DocumentNotFoundError(DocumentError):
    """No tax document matches the given identifier."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str | None = None, track_id: str | None = None):
        self.document_id = document_id
        self.track_id = track_id
        key = f"track ID {track_id}" if track_id else f"ID {document_id}"
        super().__init__(f"Tax document not found for {key}")


class InvalidStatusTransitionError(DocumentError):
    """A lifecycle step was attempted from a status that does not allow it."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, document_id: str, from_status: str, to_status: str):
        self.document_id = document_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Document {document_id} cannot move from {from_status} to {to_status}"
        )


# Folio exceptions


class FolioError(DteKernelError):
    """Base exception for folio allocation errors."""

    code: str = "FOLIO_ERROR"


class FolioRangeExhaustedError(FolioError):
    """
    No authorized folio range has numbers left for (tenant, document type).

    Operational hard stop: a new CAF must be requested from the authority.
    Retrying the same call will not help.
    """

    code: str = "FOLIO_RANGE_EXHAUSTED"

    def __init__(self, tenant_id: str, document_type: int, detail: str = ""):
        self.tenant_id = tenant_id
        self.document_type = document_type
        self.detail = detail
        msg = f"No folios left for tenant {tenant_id}, document type {document_type}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class FolioRangeOverlapError(FolioError):
    """A new range intersects a range already registered for the same key."""

    code: str = "FOLIO_RANGE_OVERLAP"

    def __init__(
        self,
        tenant_id: str,
        document_type: int,
        start: int,
        end: int,
        existing_start: int,
        existing_end: int,
    ):
        self.tenant_id = tenant_id
        self.document_type = document_type
        self.start = start
        self.end = end
        self.existing_start = existing_start
        self.existing_end = existing_end
        super().__init__(
            f"Folio range {start}-{end} overlaps existing range "
            f"{existing_start}-{existing_end} (type {document_type})"
        )


class FolioAlreadyVoidedError(FolioError):
    """The folio has already been voided."""

    code: str = "FOLIO_ALREADY_VOIDED"

    def __init__(self, tenant_id: str, document_type: int, folio: int):
        self.tenant_id = tenant_id
        self.document_type = document_type
        self.folio = folio
        super().__init__(f"Folio {folio} (type {document_type}) is already void")


class FolioNotAllocatedError(FolioError):
    """The folio was never handed out by any range, so it cannot be voided."""

    code: str = "FOLIO_NOT_ALLOCATED"

    def __init__(self, tenant_id: str, document_type: int, folio: int):
        self.tenant_id = tenant_id
        self.document_type = document_type
        self.folio = folio
        super().__init__(
            f"Folio {folio} (type {document_type}) has not been allocated"
        )


class InvalidCafError(FolioError):
    """The CAF authorization file is malformed or internally inconsistent."""

    code: str = "INVALID_CAF"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid CAF: {reason}")


# Serialization exceptions


class SerializationError(DteKernelError):
    """Base exception for XML serialization errors."""

    code: str = "SERIALIZATION_ERROR"


class SchemaViolationError(SerializationError):
    """
    Serializer output does not conform to the authority schema.

    This is an internal bug, not a caller error: the builder guarantees
    valid documents, so the serializer must emit conformant XML.
    """

    code: str = "SCHEMA_VIOLATION"

    def __init__(self, element_path: str, messages: list[str]):
        self.element_path = element_path
        self.messages = list(messages)
        first = self.messages[0] if self.messages else "unknown error"
        super().__init__(f"Schema violation at {element_path}: {first}")


# Signing exceptions


class SigningError(DteKernelError):
    """Base exception for digital signature errors."""

    code: str = "SIGNING_ERROR"


class CertificateInvalidError(SigningError):
    """
    The signing certificate cannot be used.

    reason is one of: expired, not_yet_valid, revoked, chain_untrusted,
    key_mismatch, unreadable.
    Raised before any signature output is produced.
    """

    code: str = "CERTIFICATE_INVALID"

    def __init__(self, reason: str, subject: str = "", detail: str = ""):
        self.reason = reason
        self.subject = subject
        self.detail = detail
        msg = f"Certificate invalid ({reason})"
        if subject:
            msg = f"{msg} for {subject}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class CredentialScopeError(SigningError):
    """Credentials of one tenant were used to sign another tenant's data."""

    code: str = "CREDENTIAL_SCOPE_VIOLATION"

    def __init__(self, credential_tenant_id: str, document_tenant_id: str):
        self.credential_tenant_id = credential_tenant_id
        self.document_tenant_id = document_tenant_id
        super().__init__(
            f"Credentials for tenant {credential_tenant_id} cannot sign "
            f"documents of tenant {document_tenant_id}"
        )


class SignatureVerificationError(SigningError):
    """An enveloped signature did not verify."""

    code: str = "SIGNATURE_VERIFICATION_FAILED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Signature verification failed: {reason}")


# Transmission exceptions


class TransmissionError(DteKernelError):
    """Base exception for authority communication errors."""

    code: str = "TRANSMISSION_ERROR"


class TransmissionFailedError(TransmissionError):
    """
    Submission or status query failed.

    transient=True: network error, timeout, 5xx or an authority status that
        is worth retrying.  Raised by status queries, which callers simply
        repeat later.
    transient=False: 4xx, a definitive authority rejection of the upload,
        or a transient failure that outlived the retry budget
        (``retries_exhausted`` is True).  Needs manual intervention; the
        document stays SIGNED and can be resubmitted.
    """

    code: str = "TRANSMISSION_FAILED"

    def __init__(
        self,
        reason: str,
        *,
        transient: bool,
        document_id: str | None = None,
        folio: int | None = None,
        http_status: int | None = None,
        authority_code: str | None = None,
        attempts: int = 0,
        retries_exhausted: bool = False,
    ):
        self.reason = reason
        self.transient = transient
        self.document_id = document_id
        self.folio = folio
        self.http_status = http_status
        self.authority_code = authority_code
        self.attempts = attempts
        self.retries_exhausted = retries_exhausted
        kind = "transient" if transient else "permanent"
        super().__init__(f"Transmission failed ({kind}) after {attempts} attempt(s): {reason}")

    @property
    def permanent(self) -> bool:
        return not self.transient


class AuthenticationError(TransmissionError):
    """Seed/token exchange with the authority did not yield a token."""

    code: str = "AUTHENTICATION_FAILED"

    def __init__(self, reason: str, *, transient: bool = False, http_status: int | None = None):
        self.reason = reason
        self.transient = transient
        self.http_status = http_status
        super().__init__(f"Authority authentication failed: {reason}")


# Response exceptions


class ResponseError(DteKernelError):
    """Base exception for authority response handling."""

    code: str = "RESPONSE_ERROR"


class ResponseParseError(ResponseError):
    """The authority response body could not be parsed."""

    code: str = "RESPONSE_PARSE_ERROR"

    def __init__(self, reason: str, track_id: str | None = None):
        self.reason = reason
        self.track_id = track_id
        super().__init__(f"Cannot parse authority response: {reason}")


# Immutability exceptions


class ImmutabilityError(DteKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an append-only record.

    SignedEnvelope, TransmissionAttempt and VoidedFolio are immutable from
    creation; TaxDocument is immutable once terminal.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
