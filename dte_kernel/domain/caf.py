"""
CAF -- parsing of the authority's folio range authorization file.

Responsibility:
    Turns the XML file the SII issues when it authorizes a folio range
    (``AUTORIZACION/CAF/DA`` + ``RSASK``) into a CafAuthorization value:
    issuer RUT, document type, folio bounds, authorization date, the SII key
    id (IDK) and the range's RSA key pair used to sign each document's TED
    stamp.

Architecture position:
    Kernel > Domain.  Pure parsing; registering the range is the folio
    allocator's job.

Invariants enforced:
    - D <= H, both positive.
    - The RSASK private key matches the RSAPK public modulus/exponent.

Failure modes:
    - InvalidCafError on malformed XML, missing elements, or a key mismatch.

Audit relevance:
    The raw CAF XML is persisted with its FolioRange so that every stamped
    document can be traced back to the authorization that covered its folio.
"""

from __future__ import annotations

import base64
import calendar
from dataclasses import dataclass, field
from datetime import date

from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import load_pem_private_key
from lxml import etree

from dte_kernel.domain.document_types import DocumentType
from dte_kernel.exceptions import InvalidCafError

# CAF authorizations stop being usable this many months after FA.
CAF_VALIDITY_MONTHS = 6


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _b64_int(text: str) -> int:
    return int.from_bytes(base64.b64decode(text), "big")


@dataclass(frozen=True)
class CafAuthorization:
    """
    One authorized folio range.

    private_key_pem is excluded from repr so the key never lands in a log
    line or traceback by accident.
    """

    issuer_rut: str
    issuer_name: str
    document_type: DocumentType
    range_start: int
    range_end: int
    authorized_on: date
    authority_key_id: int
    caf_xml: bytes = field(repr=False)
    private_key_pem: bytes = field(repr=False)

    @property
    def expires_on(self) -> date:
        return _add_months(self.authorized_on, CAF_VALIDITY_MONTHS)

    def covers(self, folio: int) -> bool:
        return self.range_start <= folio <= self.range_end

    def private_key(self) -> rsa.RSAPrivateKey:
        key = load_pem_private_key(self.private_key_pem, password=None)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise InvalidCafError("RSASK is not an RSA key")
        return key

    def caf_element(self) -> etree._Element:
        """A fresh copy of the ``CAF`` element, for embedding in a TED."""
        root = etree.fromstring(self.caf_xml, parser=_parser())
        caf = root if root.tag == "CAF" else root.find("CAF")
        return caf


def _parser() -> etree.XMLParser:
    return etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)


def _required_text(node: etree._Element, path: str) -> str:
    found = node.find(path)
    if found is None or not (found.text or "").strip():
        raise InvalidCafError(f"missing {path}")
    return found.text.strip()


def parse_caf(data: bytes | str) -> CafAuthorization:
    """
    Parse an SII CAF file.

    Args:
        data: The AUTORIZACION document as bytes (any declared encoding) or str.

    Returns:
        CafAuthorization for the range.

    Raises:
        InvalidCafError: If the document is malformed or inconsistent.
    """
    raw = data.encode("utf-8") if isinstance(data, str) else data
    try:
        root = etree.fromstring(raw, parser=_parser())
    except etree.XMLSyntaxError as exc:
        raise InvalidCafError(f"not well-formed XML: {exc}") from exc

    if root.tag != "AUTORIZACION":
        raise InvalidCafError(f"unexpected root element {root.tag}")

    da = root.find("CAF/DA")
    if da is None:
        raise InvalidCafError("missing CAF/DA")

    try:
        document_type = DocumentType(int(_required_text(da, "TD")))
    except ValueError as exc:
        raise InvalidCafError(f"unsupported document type: {exc}") from exc

    try:
        start = int(_required_text(da, "RNG/D"))
        end = int(_required_text(da, "RNG/H"))
        authorized_on = date.fromisoformat(_required_text(da, "FA"))
        key_id = int(_required_text(da, "IDK"))
    except ValueError as exc:
        raise InvalidCafError(str(exc)) from exc

    if start < 1 or end < start:
        raise InvalidCafError(f"invalid range {start}-{end}")

    key_pem = _required_text(root, "RSASK").encode("ascii")
    try:
        key = load_pem_private_key(key_pem, password=None)
    except ValueError as exc:
        raise InvalidCafError("RSASK is not a readable private key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidCafError("RSASK is not an RSA key")

    public_numbers = key.public_key().public_numbers()
    try:
        modulus = _b64_int(_required_text(da, "RSAPK/M"))
        exponent = _b64_int(_required_text(da, "RSAPK/E"))
    except (ValueError, TypeError) as exc:
        raise InvalidCafError("RSAPK is not valid base64") from exc
    if (public_numbers.n, public_numbers.e) != (modulus, exponent):
        raise InvalidCafError("RSASK does not match RSAPK")

    return CafAuthorization(
        issuer_rut=_required_text(da, "RE"),
        issuer_name=_required_text(da, "RS"),
        document_type=document_type,
        range_start=start,
        range_end=end,
        authorized_on=authorized_on,
        authority_key_id=key_id,
        caf_xml=etree.tostring(root, encoding="ISO-8859-1"),
        private_key_pem=key_pem,
    )
