"""
TransmissionClient -- authenticated upload to the SII and status queries.

Responsibility:
    Obtains a session token through the seed/token exchange, uploads the
    signed EnvioDTE of a document, records every attempt, and queries the
    processing status of a track ID.

Architecture position:
    Kernel > Services.  The only component that performs network I/O.
    Settings arrive as plain objects (EndpointSet, TransmissionSettings,
    TokenSettings, PollingSettings); this module never reads configuration.

Invariants enforced:
    - Every upload attempt, successful or not, appends one
      TransmissionAttempt row.  Attempt numbers continue across calls.
    - Each request carries an explicit timeout, independent of the
      backoff between attempts.
    - Network errors, timeouts, 5xx and retryable receipt codes are retried
      with exponential backoff up to max_attempts.  4xx and definitive
      receipt codes are never retried.
    - The token is cached per (tenant, environment) and shared across
      threads.  The exchange holds a lock for its own key only; it never
      reaches a log line.

Failure modes:
    - TransmissionFailedError(transient=False): 4xx, definitive receipt
      code, unreadable receipt, or retries exhausted.
    - TransmissionFailedError(transient=True): status query that kept
      failing transiently.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import requests
from lxml import etree
from sqlalchemy.orm import Session

from dte_kernel.domain import rut
from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.credentials import SigningCredentials
from dte_kernel.domain.dtos import DocumentStatus
from dte_kernel.exceptions import (
    AuthenticationError,
    TransmissionFailedError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.signed_envelope import SignedEnvelope
from dte_kernel.models.transmission import AttemptOutcome, TransmissionAttempt
from dte_kernel.services.base import BaseService
from dte_kernel.services.response_processor import parse_status_response
from dte_kernel.utils.hashing import sha256_hex
from dte_kernel.utils.xml import parse

if TYPE_CHECKING:
    from dte_config.schema import (
        EndpointSet,
        PollingSettings,
        TokenSettings,
        TransmissionSettings,
    )

logger = get_logger("services.transmission_client")

# Upload receipt STATUS codes (RECEPCIONDTE/STATUS)
UPLOAD_OK = "0"
UPLOAD_STATUS_TEXT = {
    "0": "upload received",
    "1": "sender lacks permission or schema error",
    "2": "signature error",
    "3": "authority system error",
    "5": "not authenticated",
    "6": "company not authorized",
    "7": "file error",
    "99": "other error",
}
TRANSIENT_UPLOAD_CODES = frozenset({"3", "5"})
TOKEN_REJECTED = "5"

# Seed and token responses report success as ESTADO 00
AUTH_OK = "00"

# Raw responses kept on attempt rows are capped
MAX_STORED_BODY = 8000


def _text(root, name: str) -> str | None:
    nodes = root.xpath(".//*[local-name()=$name]", name=name)
    if not nodes or nodes[0].text is None:
        return None
    return nodes[0].text.strip()


@dataclass
class _CachedToken:
    value: str
    expires_at: float


class TokenProvider:
    """
    Seed/token exchange with a per-(tenant, environment) cache.

    A token is reused until ``effective_ttl_seconds`` after it was obtained,
    then replaced.  invalidate() drops it early, e.g. after the upload
    endpoint reports the session as unauthenticated.
    """

    def __init__(
        self,
        endpoints: "EndpointSet",
        signer,
        token_settings: "TokenSettings",
        *,
        environment: str = "certification",
        timeout_seconds: float = 30.0,
        http=None,
        clock: Clock | None = None,
    ):
        self._endpoints = endpoints
        self._signer = signer
        self._settings = token_settings
        self._environment = str(getattr(environment, "value", environment))
        self._timeout = timeout_seconds
        self._http = http or requests.Session()
        self._clock = clock or SystemClock()
        self._cache: dict[tuple[str, str], _CachedToken] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._lock = threading.Lock()

    def get_token(self, credentials: SigningCredentials) -> str:
        """
        Return a valid token for the credentials' tenant.

        Callers for the same tenant wait for one exchange; other tenants
        are never held up by it.

        Raises:
            AuthenticationError: The exchange failed.  transient is True for
                network errors and 5xx.
        """
        key = (credentials.tenant_id, self._environment)
        with self._key_lock(key):
            cached = self._cache.get(key)
            if cached is not None and self._clock.monotonic() < cached.expires_at:
                return cached.value

            token = self._request_token(credentials)
            with self._lock:
                self._cache[key] = _CachedToken(
                    value=token,
                    expires_at=self._clock.monotonic() + self._settings.effective_ttl_seconds,
                )
            logger.info(
                "token_acquired",
                extra={
                    "tenant_id": credentials.tenant_id,
                    "environment": self._environment,
                    "ttl_seconds": self._settings.effective_ttl_seconds,
                },
            )
            return token

    def invalidate(self, tenant_id: str) -> None:
        with self._lock:
            if self._cache.pop((tenant_id, self._environment), None) is not None:
                logger.info(
                    "token_invalidated",
                    extra={"tenant_id": tenant_id, "environment": self._environment},
                )

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._lock:
            return self._locks.setdefault(key, threading.Lock())

    def _request_token(self, credentials: SigningCredentials) -> str:
        seed_body = self._call("GET", self._endpoints.seed_url)
        seed = self._read(seed_body, "SEMILLA", "seed")

        signed_seed = self._signer.sign_seed(seed, credentials)
        token_body = self._call(
            "POST",
            self._endpoints.token_url,
            data={"pszXml": signed_seed.decode("utf-8")},
        )
        return self._read(token_body, "TOKEN", "token")

    def _call(self, method: str, url: str, **kwargs) -> bytes:
        try:
            response = self._http.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise AuthenticationError(f"{type(exc).__name__} calling {url}", transient=True) from exc
        if response.status_code >= 400:
            raise AuthenticationError(
                f"HTTP {response.status_code} from {url}",
                transient=response.status_code >= 500,
                http_status=response.status_code,
            )
        return response.content

    @staticmethod
    def _read(body: bytes, field: str, label: str) -> str:
        try:
            root = parse(body)
        except etree.XMLSyntaxError as exc:
            raise AuthenticationError(f"{label} response is not XML") from exc
        status = _text(root, "ESTADO")
        value = _text(root, field)
        if status not in (None, AUTH_OK) or not value:
            raise AuthenticationError(
                f"{label} refused (ESTADO {status}: {_text(root, 'GLOSA') or 'no description'})"
            )
        return value


@dataclass(frozen=True)
class _Outcome:
    """Classification of one upload or status call."""

    outcome: AttemptOutcome
    transient: bool | None
    http_status: int | None = None
    authority_code: str | None = None
    track_id: str | None = None
    detail: str | None = None
    body: bytes | None = None


class TransmissionClient(BaseService[TransmissionAttempt]):
    """
    Uploads signed envelopes and queries their status.

    Args:
        session: Session the attempt rows are flushed into.
        endpoints: Authority endpoints for the active environment.
        tokens: Shared TokenProvider.
        transmission: Timeout, attempt and backoff settings.
        polling: Interval and timeout for wait_for_status().
        http: requests.Session compatible object.
        clock: Time source for attempt timestamps and polling deadlines.
        sleep: Called with the backoff delay in seconds.  Tests pass
            DeterministicClock.advance.
    """

    def __init__(
        self,
        session: Session,
        endpoints: "EndpointSet",
        tokens: TokenProvider,
        transmission: "TransmissionSettings",
        polling: "PollingSettings",
        *,
        http=None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        super().__init__(session)
        self._endpoints = endpoints
        self._tokens = tokens
        self._settings = transmission
        self._polling = polling
        self._http = http or requests.Session()
        self._clock = clock or SystemClock()
        self._sleep = sleep or time.sleep

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def submit(self, envelope: SignedEnvelope, credentials: SigningCredentials) -> TransmissionAttempt:
        """
        Upload envelope.submission_xml, retrying transient failures.

        Returns:
            The successful TransmissionAttempt, carrying the track ID.

        Raises:
            TransmissionFailedError: Permanent failure or retries exhausted.
                The document is not modified.
        """
        document = envelope.document
        if envelope.submission_xml is None:
            raise ValueError(f"Envelope {envelope.xml_id} has no signed submission to upload")

        issuer_body, issuer_dv = rut.split(document.issuer_rut)
        sender_body, sender_dv = rut.split(credentials.sender_rut or document.issuer_rut)
        form = {
            "rutSender": str(sender_body),
            "dvSender": sender_dv,
            "rutCompany": str(issuer_body),
            "dvCompany": issuer_dv,
        }
        filename = f"EnvioDTE_{envelope.xml_id}.xml"

        previous = max((a.attempt_number for a in document.attempts), default=0)
        max_attempts = self._settings.max_attempts
        last: _Outcome | None = None

        for number in range(1, max_attempts + 1):
            attempted_at = self._clock.now()
            started = self._clock.monotonic()
            result = self._upload(credentials, form, filename, envelope.submission_xml)
            duration_ms = int((self._clock.monotonic() - started) * 1000)

            attempt = TransmissionAttempt(
                tenant_id=document.tenant_id,
                attempt_number=previous + number,
                attempted_at=attempted_at,
                outcome=result.outcome,
                http_status=result.http_status,
                authority_code=result.authority_code,
                track_id=result.track_id,
                transient=result.transient,
                error_detail=result.detail,
                response_body=_stored_body(result.body),
                response_sha256=sha256_hex(result.body) if result.body is not None else None,
                duration_ms=duration_ms,
            )
            attempt.document = document
            self.session.add(attempt)
            self.session.flush()
            last = result

            if result.outcome == AttemptOutcome.SUCCESS:
                logger.info(
                    "transmission_succeeded",
                    extra={
                        "attempt_number": attempt.attempt_number,
                        "track_id": result.track_id,
                        "duration_ms": duration_ms,
                    },
                )
                return attempt

            logger.warning(
                "transmission_attempt_failed",
                extra={
                    "attempt_number": attempt.attempt_number,
                    "http_status": result.http_status,
                    "authority_code": result.authority_code,
                    "transient": result.transient,
                    "detail": result.detail,
                },
            )

            if not result.transient:
                raise TransmissionFailedError(
                    result.detail or "upload refused",
                    transient=False,
                    document_id=str(document.id),
                    folio=document.folio,
                    http_status=result.http_status,
                    authority_code=result.authority_code,
                    attempts=number,
                )

            if result.authority_code == TOKEN_REJECTED:
                self._tokens.invalidate(credentials.tenant_id)

            if number < max_attempts:
                delay = self._settings.backoff_seconds(number)
                logger.debug("transmission_backoff", extra={"delay_seconds": delay, "next_attempt": number + 1})
                self._sleep(delay)

        logger.error(
            "transmission_retries_exhausted",
            extra={"attempts": max_attempts, "detail": last.detail if last else None},
        )
        raise TransmissionFailedError(
            f"gave up after {max_attempts} attempts: {last.detail if last else 'no attempt made'}",
            transient=False,
            document_id=str(document.id),
            folio=document.folio,
            http_status=last.http_status if last else None,
            authority_code=last.authority_code if last else None,
            attempts=max_attempts,
            retries_exhausted=True,
        )

    def _upload(self, credentials, form: dict, filename: str, payload: bytes) -> _Outcome:
        try:
            token = self._tokens.get_token(credentials)
        except AuthenticationError as exc:
            return _Outcome(
                AttemptOutcome.ERROR,
                transient=exc.transient,
                http_status=exc.http_status,
                detail=f"authentication: {exc.reason}",
            )

        try:
            response = self._http.post(
                self._endpoints.upload_url,
                data=form,
                files={"archivo": (filename, payload, "text/xml")},
                headers={"Cookie": f"TOKEN={token}", "User-Agent": self._settings.user_agent},
                timeout=self._settings.timeout_seconds,
            )
        except requests.Timeout:
            return _Outcome(AttemptOutcome.TIMEOUT, transient=True, detail="request timed out")
        except requests.RequestException as exc:
            return _Outcome(AttemptOutcome.ERROR, transient=True, detail=f"{type(exc).__name__}: {exc}")

        return self._classify_receipt(response.status_code, response.content)

    @staticmethod
    def _classify_receipt(http_status: int, body: bytes) -> _Outcome:
        if http_status >= 500:
            return _Outcome(AttemptOutcome.ERROR, True, http_status, detail=f"HTTP {http_status}", body=body)
        if http_status >= 400:
            return _Outcome(AttemptOutcome.ERROR, False, http_status, detail=f"HTTP {http_status}", body=body)

        try:
            root = parse(body)
        except etree.XMLSyntaxError:
            # The upload may have been taken; resending blindly could duplicate it
            return _Outcome(AttemptOutcome.ERROR, False, http_status, detail="receipt is not XML", body=body)

        code = _text(root, "STATUS")
        track_id = _text(root, "TRACKID")
        if code == UPLOAD_OK and track_id:
            return _Outcome(AttemptOutcome.SUCCESS, None, http_status, code, track_id, body=body)

        if code is None:
            detail = "receipt has no STATUS"
        else:
            detail = f"STATUS {code}: {UPLOAD_STATUS_TEXT.get(code, 'unknown code')}"
            if code == UPLOAD_OK:
                detail = "receipt has STATUS 0 but no TRACKID"
        return _Outcome(
            AttemptOutcome.ERROR,
            code in TRANSIENT_UPLOAD_CODES,
            http_status,
            code,
            detail=detail,
            body=body,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def poll_status(
        self,
        tenant_id: str,
        track_id: str,
        issuer_rut: str,
        credentials: SigningCredentials,
    ) -> DocumentStatus:
        """
        Query the authority once (with transient retries) for track_id.

        Read-only: the verdict is returned, not applied.

        Raises:
            TransmissionFailedError: transient=True after repeated transient
                failures, transient=False on 4xx.
            ResponseParseError: Response body cannot be interpreted.
        """
        if credentials.tenant_id != tenant_id:
            raise ValueError(f"Credentials of tenant {credentials.tenant_id} used to poll for {tenant_id}")

        form = {"TRACKID": track_id, "RUT_EMISOR": rut.normalize(issuer_rut)}
        max_attempts = self._settings.max_attempts
        detail = ""
        http_status = None

        for number in range(1, max_attempts + 1):
            try:
                token = self._tokens.get_token(credentials)
                response = self._http.post(
                    self._endpoints.status_url,
                    data=form,
                    headers={"Cookie": f"TOKEN={token}", "User-Agent": self._settings.user_agent},
                    timeout=self._settings.timeout_seconds,
                )
            except AuthenticationError as exc:
                if not exc.transient:
                    raise TransmissionFailedError(
                        f"authentication: {exc.reason}", transient=False, attempts=number,
                    ) from exc
                detail, http_status = f"authentication: {exc.reason}", exc.http_status
            except requests.RequestException as exc:
                detail, http_status = f"{type(exc).__name__}: {exc}", None
            else:
                http_status = response.status_code
                if http_status < 400:
                    status = parse_status_response(response.content, track_id)
                    logger.info(
                        "status_polled",
                        extra={
                            "tenant_id": tenant_id,
                            "track_id": track_id,
                            "authority_code": status.authority_code,
                            "outcome": status.outcome.value,
                        },
                    )
                    return status
                detail = f"HTTP {http_status}"
                if http_status < 500:
                    raise TransmissionFailedError(
                        detail, transient=False, http_status=http_status, attempts=number,
                    )

            logger.warning(
                "status_poll_failed",
                extra={"track_id": track_id, "attempt_number": number, "detail": detail},
            )
            if number < max_attempts:
                self._sleep(self._settings.backoff_seconds(number))

        raise TransmissionFailedError(
            detail or "status query failed",
            transient=True,
            http_status=http_status,
            attempts=max_attempts,
            retries_exhausted=True,
        )

    def wait_for_status(
        self,
        tenant_id: str,
        track_id: str,
        issuer_rut: str,
        credentials: SigningCredentials,
        timeout_seconds: float | None = None,
    ) -> DocumentStatus:
        """
        Poll until the verdict is terminal or timeout_seconds elapse.

        The interval doubles after each non-terminal answer, capped at the
        configured maximum.  Transient query failures are logged and polling
        continues.

        Returns:
            The last status seen; is_terminal is False on timeout.

        Raises:
            TransmissionFailedError: Permanent query failure, or the timeout
                elapsed without a single readable answer.
        """
        timeout = self._polling.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = self._clock.monotonic() + timeout
        interval = self._polling.interval_seconds
        last_status: DocumentStatus | None = None
        last_error: TransmissionFailedError | None = None

        while True:
            try:
                last_status = self.poll_status(tenant_id, track_id, issuer_rut, credentials)
            except TransmissionFailedError as exc:
                if not exc.transient:
                    raise
                last_error = exc
            else:
                if last_status.is_terminal:
                    return last_status

            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                break
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self._polling.max_interval_seconds)

        logger.info(
            "status_wait_timed_out",
            extra={
                "track_id": track_id,
                "timeout_seconds": timeout,
                "authority_code": last_status.authority_code if last_status else None,
            },
        )
        if last_status is None:
            raise last_error or TransmissionFailedError("no status before timeout", transient=True)
        return last_status


def _stored_body(body: bytes | None) -> str | None:
    if body is None:
        return None
    text = body.decode("iso-8859-1")
    return text[:MAX_STORED_BODY]

