"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Tax documents are legal records.  Once a document has been signed its signed
bytes must never change, every call made to the authority must remain on
record, and folio numbers must be accountable forever.  SQLAlchemy fires
events before UPDATE/DELETE statements reach the database; the listeners in
this module intercept them and raise ImmutabilityViolationError, aborting the
flush before anything is written.

    session.flush()
         |
         v
    [before_update / before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | When Immutable                    | Why
---------------------|-----------------------------------|--------------------------------
SignedEnvelope       | ALWAYS (from creation)            | Signed bytes are the legal record
TransmissionAttempt  | ALWAYS (from creation)            | Append-only audit trail
VoidedFolio          | ALWAYS (from creation)            | Folio accountability
TaxDocument          | Once ACCEPTED / REJECTED / VOID   | Authority verdict is final
TaxDocumentLine      | Once parent left DRAFT            | Lines are part of signed content
TaxDocumentReference | Once parent left DRAFT            | Same
FolioRange           | Bounds always; next_available may | No skipped or reused folios
                     | only increase                     |

===============================================================================
USAGE
===============================================================================

    from dte_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup, idempotent

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from dte_kernel.exceptions import ImmutabilityViolationError
from dte_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Audit metadata, allowed to change on otherwise frozen rows
_METADATA_FIELDS = frozenset({"updated_at"})

# TaxDocument fields the response processor may still touch on terminal rows
_TERMINAL_DOCUMENT_MUTABLE = frozenset({"updated_at", "last_checked_at"})


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(mapper, target) -> set[str]:
    changed = set()
    for attr in mapper.column_attrs:
        if get_history(target, attr.key).has_changes():
            changed.add(attr.key)
    return changed


# =============================================================================
# Always-immutable records
# =============================================================================


def _check_append_only_update(mapper, connection, target):
    """Block any content change on SignedEnvelope, TransmissionAttempt, VoidedFolio."""
    changed = _changed_fields(mapper, target) - _METADATA_FIELDS
    if changed:
        _block(
            type(target).__name__,
            target,
            "UPDATE",
            f"{type(target).__name__} records are append-only "
            f"(attempted change: {', '.join(sorted(changed))})",
        )


def _check_append_only_delete(mapper, connection, target):
    _block(
        type(target).__name__,
        target,
        "DELETE",
        f"{type(target).__name__} records cannot be deleted",
    )


# =============================================================================
# TaxDocument
# =============================================================================


def _was_terminal(target) -> bool:
    """
    True when the row was already terminal BEFORE this flush.

    Moving INTO a terminal status is the one allowed write; anything after
    that is blocked.
    """
    from dte_kernel.models.tax_document import TaxDocumentStatus

    history = get_history(target, "status")
    if history.deleted:
        previous = history.deleted[0]
    elif history.unchanged:
        previous = history.unchanged[0]
    else:
        return False
    return TaxDocumentStatus(previous).is_terminal


def _check_tax_document_update(mapper, connection, target):
    if not _was_terminal(target):
        return
    changed = _changed_fields(mapper, target) - _TERMINAL_DOCUMENT_MUTABLE
    if changed:
        _block(
            "TaxDocument",
            target,
            "UPDATE",
            f"Document is {target.status.value} and cannot be modified "
            f"(attempted change: {', '.join(sorted(changed))})",
        )


def _check_tax_document_delete(mapper, connection, target):
    from dte_kernel.models.tax_document import TaxDocumentStatus

    if target.status != TaxDocumentStatus.DRAFT:
        _block(
            "TaxDocument",
            target,
            "DELETE",
            "Documents holding a folio cannot be deleted; void them instead",
        )


def _check_document_child_change(mapper, connection, target):
    """Lines and references freeze once the parent document left DRAFT."""
    from dte_kernel.models.tax_document import TaxDocumentStatus

    parent = target.document
    if parent is None or parent.status == TaxDocumentStatus.DRAFT:
        return
    if _changed_fields(mapper, target):
        _block(
            type(target).__name__,
            target,
            "UPDATE",
            f"Document is {parent.status.value}; its content is frozen",
        )


def _check_document_child_delete(mapper, connection, target):
    from dte_kernel.models.tax_document import TaxDocumentStatus

    parent = target.document
    if parent is None or parent.status == TaxDocumentStatus.DRAFT:
        return
    _block(
        type(target).__name__,
        target,
        "DELETE",
        f"Document is {parent.status.value}; its content is frozen",
    )


# =============================================================================
# FolioRange
# =============================================================================

_FOLIO_RANGE_FROZEN = frozenset({"tenant_id", "environment", "document_type", "start_folio", "end_folio"})


def _check_folio_range_update(mapper, connection, target):
    changed = _changed_fields(mapper, target) & _FOLIO_RANGE_FROZEN
    if changed:
        _block(
            "FolioRange",
            target,
            "UPDATE",
            f"Folio range identity cannot change (attempted change: {', '.join(sorted(changed))})",
        )

    history = get_history(target, "next_available")
    if history.deleted and history.added:
        old, new = history.deleted[0], history.added[0]
        # INVARIANT: next_available is monotonically non-decreasing
        if new < old:
            _block(
                "FolioRange",
                target,
                "UPDATE",
                f"next_available cannot decrease ({old} -> {new}); "
                "allocated folios are never returned",
            )


def _check_folio_range_delete(mapper, connection, target):
    if target.next_available > target.start_folio:
        _block(
            "FolioRange",
            target,
            "DELETE",
            "Folio ranges with allocated folios cannot be deleted",
        )


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from dte_kernel.models.folio import FolioRange, VoidedFolio
    from dte_kernel.models.signed_envelope import SignedEnvelope
    from dte_kernel.models.tax_document import (
        TaxDocument,
        TaxDocumentLine,
        TaxDocumentReference,
    )
    from dte_kernel.models.transmission import TransmissionAttempt

    pairs = []
    for model in (SignedEnvelope, TransmissionAttempt, VoidedFolio):
        pairs.append((model, "before_update", _check_append_only_update))
        pairs.append((model, "before_delete", _check_append_only_delete))
    pairs.append((TaxDocument, "before_update", _check_tax_document_update))
    pairs.append((TaxDocument, "before_delete", _check_tax_document_delete))
    for model in (TaxDocumentLine, TaxDocumentReference):
        pairs.append((model, "before_update", _check_document_child_change))
        pairs.append((model, "before_delete", _check_document_child_delete))
    pairs.append((FolioRange, "before_update", _check_folio_range_update))
    pairs.append((FolioRange, "before_delete", _check_folio_range_delete))
    return pairs


def register_immutability_listeners():
    """
    Register all immutability listeners.

    Call after models are importable and before any database work.
    Calling it twice does not register duplicates.
    """
    for target, event_name, fn in _listeners():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove a listener, ignoring it if it was never registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability listeners.

    WARNING: Only use this in tests that must violate the rules on purpose.
    """
    for target, event_name, fn in _listeners():
        _safe_remove_listener(target, event_name, fn)
