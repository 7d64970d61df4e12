"""Services for the DTE kernel (write side and authority I/O)."""

from dte_kernel.services.digital_signer import DigitalSigner
from dte_kernel.services.document_builder import DocumentBuilder
from dte_kernel.services.folio_allocator import FolioAllocator
from dte_kernel.services.response_processor import ResponseProcessor, parse_status_response
from dte_kernel.services.transmission_client import TokenProvider, TransmissionClient
from dte_kernel.services.xml_serializer import XmlSerializer

__all__ = [
    "DigitalSigner",
    "DocumentBuilder",
    "FolioAllocator",
    "ResponseProcessor",
    "TokenProvider",
    "TransmissionClient",
    "XmlSerializer",
    "parse_status_response",
]
