"""Selectors for the DTE kernel (read side)."""

from dte_kernel.selectors.document_selector import AttemptDTO, DocumentDTO, DocumentSelector
from dte_kernel.selectors.folio_selector import FolioRangeStatus, FolioReport, FolioSelector

__all__ = [
    "AttemptDTO",
    "DocumentDTO",
    "DocumentSelector",
    "FolioRangeStatus",
    "FolioReport",
    "FolioSelector",
]
