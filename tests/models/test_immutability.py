"""
Append-only and frozen-record enforcement at the ORM layer.

Verifies:
- Documents are frozen once the authority's verdict is recorded
- Lines are frozen once the document holds a folio
- Signed envelopes, transmission attempts and voided folios are append-only
- Folio range bounds never change and next_available never moves back
"""

from contextlib import contextmanager

import pytest

from dte_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from dte_kernel.exceptions import ImmutabilityViolationError
from dte_kernel.models.folio import FolioRange
from dte_kernel.models.tax_document import TaxDocumentStatus
from dte_kernel.models.transmission import AttemptOutcome, TransmissionAttempt
from dte_kernel.services.folio_allocator import FolioAllocator


@contextmanager
def disabled_immutability():
    """Turn the listeners off for tests that tamper on purpose."""
    unregister_immutability_listeners()
    try:
        yield
    finally:
        register_immutability_listeners()


def _accept(document, session, clock):
    document.transition_to(TaxDocumentStatus.ACCEPTED)
    document.authority_code = "EPR"
    document.resolved_at = clock.now()
    session.commit()


class TestTaxDocumentImmutability:

    def test_moving_into_terminal_status_is_allowed(self, session, clock, make_submitted_document):
        document = make_submitted_document()

        _accept(document, session, clock)

        session.refresh(document)
        assert document.status == TaxDocumentStatus.ACCEPTED

    def test_accepted_document_cannot_change(self, session, clock, make_submitted_document):
        document = make_submitted_document()
        _accept(document, session, clock)

        document.receiver_name = "Otra Empresa"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.commit()

        assert "receiver_name" in str(exc_info.value)
        session.rollback()

    def test_accepted_document_status_cannot_change(self, session, clock, make_submitted_document):
        document = make_submitted_document()
        _accept(document, session, clock)

        document.status = TaxDocumentStatus.REJECTED
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

    def test_last_checked_at_still_updates(self, session, clock, make_submitted_document):
        document = make_submitted_document()
        _accept(document, session, clock)

        clock.advance(3600)
        document.last_checked_at = clock.now()
        session.commit()

        session.refresh(document)
        assert document.last_checked_at is not None

    def test_document_holding_folio_cannot_be_deleted(self, session, make_signed_document):
        document = make_signed_document()

        session.delete(document)
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

    def test_signed_document_lines_are_frozen(self, session, make_signed_document):
        document = make_signed_document()

        document.lines[0].description = "Otro servicio"
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

    def test_listeners_can_be_disabled(self, session, clock, make_submitted_document):
        document = make_submitted_document()
        _accept(document, session, clock)

        with disabled_immutability():
            document.receiver_name = "Otra Empresa"
            session.commit()

        session.refresh(document)
        assert document.receiver_name == "Otra Empresa"


class TestAppendOnlyRecords:

    def test_signed_envelope_cannot_change(self, session, make_signed_document):
        document = make_signed_document()

        document.envelope.submission_xml = b"<EnvioDTE/>"
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

    def test_transmission_attempt_cannot_change_or_be_deleted(self, session, clock, make_signed_document):
        document = make_signed_document()
        attempt = TransmissionAttempt(
            tenant_id=document.tenant_id,
            attempt_number=1,
            attempted_at=clock.now(),
            outcome=AttemptOutcome.ERROR,
            http_status=503,
            transient=True,
        )
        attempt.document = document
        session.commit()

        attempt.http_status = 200
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

        session.delete(attempt)
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

    def test_voided_folio_cannot_change(self, session, clock):
        allocator = FolioAllocator(session, clock)
        allocator.register_range("acme", 33, 1, 10)
        folio = allocator.allocate("acme", 33)
        voided = allocator.void_folio("acme", 33, folio, "printer jam")
        session.commit()

        voided.reason = "something else"
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()


class TestFolioRangeImmutability:

    @pytest.fixture
    def folio_range(self, session, clock) -> FolioRange:
        allocator = FolioAllocator(session, clock)
        folio_range = allocator.register_range("acme", 33, 1, 10)
        allocator.allocate("acme", 33)
        allocator.allocate("acme", 33)
        session.commit()
        return folio_range

    def test_next_available_cannot_decrease(self, session, folio_range):
        assert folio_range.next_available == 3

        folio_range.next_available = 2
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.commit()

        assert "cannot decrease" in str(exc_info.value)
        session.rollback()

    def test_bounds_are_frozen(self, session, folio_range):
        folio_range.end_folio = 1000
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()

    def test_deactivation_is_allowed(self, session, folio_range):
        folio_range.is_active = False
        session.commit()

        session.refresh(folio_range)
        assert folio_range.is_active is False

    def test_range_with_allocations_cannot_be_deleted(self, session, folio_range):
        session.delete(folio_range)
        with pytest.raises(ImmutabilityViolationError):
            session.commit()
        session.rollback()
