"""
XmlSerializer -- TaxDocument to canonical SII XML.

Responsibility:
    Renders a TaxDocument holding a folio into the SII ``DTE`` structure,
    embeds the CAF-signed electronic stamp (TED) when the range's CAF is
    available, validates the result against the XSD, and returns its
    C14N 1.0 bytes.  Also renders the EnvioDTE submission envelope around
    already-signed DTEs.

Architecture position:
    Kernel > Services.  Pure with respect to its input: no session, no
    clock.  TmstFirma and TSTED come from ``TaxDocument.stamped_at``, which
    is fixed when the folio is assigned.

Invariants enforced:
    - Deterministic output: fixed element order, optional elements omitted
      when empty, decimals in normalized plain notation, C14N bytes.
      Serializing an unchanged document twice is byte-identical.
    - Nothing leaves this module without passing schema validation.

Failure modes:
    - SchemaViolationError with the offending element path.
    - SerializationError when the document has no folio or timestamp, or
      the CAF does not cover the folio.
"""

import base64
import copy
import functools
import threading
from collections import Counter
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
import pytz

from dte_kernel.domain.caf import CafAuthorization
from dte_kernel.domain.document_types import DocumentType
from dte_kernel.domain.dtos import CanonicalXml
from dte_kernel.domain.rut import SII_RUT
from dte_kernel.domain.values import Money
from dte_kernel.exceptions import SchemaViolationError, SerializationError
from dte_kernel.logging_config import get_logger
from dte_kernel.models.tax_document import TaxDocument
from dte_kernel.utils.xml import (
    SII_NS,
    c14n,
    element_path,
    flatten,
    local_name,
    parse,
    requalify,
    sii,
)

logger = get_logger("services.xml_serializer")

BUNDLED_SCHEMA = Path(__file__).resolve().parent.parent / "schemas" / "DTE_v10.xsd"

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

# TmstFirma, TSTED and TmstFirmaEnv are Chilean wall-clock time without offset
SII_TIMEZONE = pytz.timezone("America/Santiago")

TED_ALGORITHM = "SHA1withRSA"

DEFAULT_SET_ID = "SetDoc"

_schema_lock = threading.Lock()


@functools.lru_cache(maxsize=4)
def load_schema(path: str) -> etree.XMLSchema:
    """Parse and cache an XSD.  Relative includes resolve from its directory."""
    return etree.XMLSchema(etree.parse(path))


def document_xml_id(document_type: int, folio: int) -> str:
    """Documento/@ID, e.g. ``T33F1042``."""
    return f"T{int(document_type)}F{folio}"


def format_decimal(value: Decimal) -> str:
    """Plain notation without trailing zeros: 1000.500 -> '1000.5'."""
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "") else text


def format_timestamp(value: datetime) -> str:
    """Santiago local time.  Naive values are taken as UTC, the way they are stored."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(SII_TIMEZONE).strftime(TIMESTAMP_FORMAT)


def _sub(parent: etree._Element, tag: str, value) -> etree._Element | None:
    """Append <tag>value</tag> unless value is None or empty."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        text = format_decimal(value)
    elif isinstance(value, date) and not isinstance(value, datetime):
        text = value.isoformat()
    else:
        text = str(value)
    if text == "":
        return None
    child = etree.SubElement(parent, sii(tag) if parent.tag.startswith("{") else tag)
    child.text = text
    return child


# ---------------------------------------------------------------------------
# Electronic stamp (TED)
# ---------------------------------------------------------------------------


def sign_stamp(dd: etree._Element, private_key: rsa.RSAPrivateKey) -> str:
    """FRMT value: SHA1withRSA over the flattened, ISO-8859-1 encoded DD."""
    payload = flatten(dd).encode("iso-8859-1")
    signature = private_key.sign(payload, padding.PKCS1v15(), hashes.SHA1())
    return base64.b64encode(signature).decode("ascii")


def verify_stamp(ted: etree._Element) -> bool:
    """
    Check a TED's FRMT against the public key in its own CAF.

    Accepts the stamp in the SII namespace (as embedded in a DTE) or in no
    namespace.
    """
    stamp = requalify(copy.deepcopy(ted), None)
    dd = stamp.find("DD")
    frmt = stamp.find("FRMT")
    if dd is None or frmt is None or not frmt.text:
        return False
    modulus = dd.findtext("CAF/DA/RSAPK/M")
    exponent = dd.findtext("CAF/DA/RSAPK/E")
    if not modulus or not exponent:
        return False
    public_key = rsa.RSAPublicNumbers(
        int.from_bytes(base64.b64decode(exponent), "big"),
        int.from_bytes(base64.b64decode(modulus), "big"),
    ).public_key()
    try:
        public_key.verify(
            base64.b64decode(frmt.text),
            flatten(dd).encode("iso-8859-1"),
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
    except InvalidSignature:
        return False
    return True


# ---------------------------------------------------------------------------
# Serializer
# ---------------------------------------------------------------------------


class XmlSerializer:
    """
    Stateless renderer for DTE and EnvioDTE documents.

    Args:
        schema_path: XSD to validate against.  None uses the bundled subset.
        validate: Disable only for diagnostics; the pipeline always validates.
    """

    def __init__(self, schema_path: Path | None = None, validate: bool = True):
        self._schema_path = Path(schema_path) if schema_path else BUNDLED_SCHEMA
        self._validate = validate

    # ------------------------------------------------------------------
    # DTE
    # ------------------------------------------------------------------

    def serialize(
        self,
        document: TaxDocument,
        caf: CafAuthorization | None = None,
    ) -> CanonicalXml:
        """
        Render document as canonical XML.

        Args:
            document: A TaxDocument with folio and stamped_at set.
            caf: Authorization covering the folio; when given, the TED
                stamp is embedded.

        Raises:
            SerializationError: Document not ready or CAF mismatch.
            SchemaViolationError: Output does not conform to the schema.
        """
        if document.folio is None:
            raise SerializationError("Document has no folio; assign one before serializing")
        if document.stamped_at is None:
            raise SerializationError("Document has no signing timestamp")

        doc_type = DocumentType(document.document_type)
        behavior = doc_type.behavior
        xml_id = document_xml_id(doc_type, document.folio)

        root = etree.Element(sii("DTE"), nsmap={None: SII_NS}, version="1.0")
        documento = etree.SubElement(root, sii("Documento"), ID=xml_id)

        self._encabezado(documento, document, behavior)

        for line in document.lines:
            detalle = etree.SubElement(documento, sii("Detalle"))
            _sub(detalle, "NroLinDet", line.line_number)
            if line.is_exempt and not behavior.exempt_only:
                _sub(detalle, "IndExe", 1)
            _sub(detalle, "NmbItem", line.description)
            _sub(detalle, "DscItem", line.detail)
            _sub(detalle, "QtyItem", line.quantity)
            _sub(detalle, "UnmdItem", line.unit)
            _sub(detalle, "PrcItem", line.unit_price)
            _sub(detalle, "MontoItem", Money.of(line.line_total, document.currency).round().amount)

        for reference in document.references:
            referencia = etree.SubElement(documento, sii("Referencia"))
            _sub(referencia, "NroLinRef", reference.line_number)
            _sub(referencia, "TpoDocRef", reference.referenced_type)
            _sub(referencia, "FolioRef", reference.referenced_folio)
            _sub(referencia, "FchRef", reference.referenced_date)
            _sub(referencia, "CodRef", reference.reference_code)
            _sub(referencia, "RazonRef", reference.reason)

        if caf is not None:
            self._stamp(documento, document, caf)

        _sub(documento, "TmstFirma", format_timestamp(document.stamped_at))

        self.validate(root)
        content = c14n(root)

        logger.debug(
            "document_serialized",
            extra={
                "document_id": str(document.id),
                "document_type": int(doc_type),
                "folio": document.folio,
                "xml_id": xml_id,
                "stamped": caf is not None,
                "size_bytes": len(content),
            },
        )
        return CanonicalXml(
            content=content,
            document_id=xml_id,
            tenant_id=document.tenant_id,
            document_type=int(doc_type),
            folio=document.folio,
        )

    @staticmethod
    def _encabezado(documento: etree._Element, document: TaxDocument, behavior) -> None:
        encabezado = etree.SubElement(documento, sii("Encabezado"))

        id_doc = etree.SubElement(encabezado, sii("IdDoc"))
        _sub(id_doc, "TipoDTE", document.document_type)
        _sub(id_doc, "Folio", document.folio)
        _sub(id_doc, "FchEmis", document.issue_date)
        if not behavior.is_receipt:
            _sub(id_doc, "FmaPago", document.payment_method)
        _sub(id_doc, "FchVenc", document.due_date)

        emisor = etree.SubElement(encabezado, sii("Emisor"))
        _sub(emisor, "RUTEmisor", document.issuer_rut)
        _sub(emisor, "RznSoc", document.issuer_name)
        _sub(emisor, "GiroEmis", document.issuer_activity)
        _sub(emisor, "Acteco", document.issuer_activity_code)
        _sub(emisor, "CdgSIISucur", document.issuer_branch_code)
        _sub(emisor, "DirOrigen", document.issuer_address)
        _sub(emisor, "CmnaOrigen", document.issuer_commune)

        receptor = etree.SubElement(encabezado, sii("Receptor"))
        _sub(receptor, "RUTRecep", document.receiver_rut)
        _sub(receptor, "RznSocRecep", document.receiver_name)
        _sub(receptor, "GiroRecep", document.receiver_activity)
        _sub(receptor, "DirRecep", document.receiver_address)
        _sub(receptor, "CmnaRecep", document.receiver_commune)

        totales = etree.SubElement(encabezado, sii("Totales"))
        if document.vat_rate > 0 and document.net_amount > 0:
            _sub(totales, "MntNeto", document.net_amount)
        if document.exempt_amount > 0:
            _sub(totales, "MntExe", document.exempt_amount)
        if document.vat_rate > 0 and document.net_amount > 0:
            _sub(totales, "TasaIVA", document.vat_rate * 100)
            _sub(totales, "IVA", document.tax_amount)
        _sub(totales, "MntTotal", document.total_amount)

    @staticmethod
    def _stamp(documento: etree._Element, document: TaxDocument, caf: CafAuthorization) -> None:
        if int(caf.document_type) != document.document_type or not caf.covers(document.folio):
            raise SerializationError(
                f"CAF {caf.document_type}:{caf.range_start}-{caf.range_end} does not cover "
                f"type {document.document_type} folio {document.folio}"
            )

        # DD is signed in no namespace, then moved into the SII namespace.
        dd = etree.Element("DD")
        _sub(dd, "RE", document.issuer_rut)
        _sub(dd, "TD", document.document_type)
        _sub(dd, "F", document.folio)
        _sub(dd, "FE", document.issue_date)
        _sub(dd, "RR", document.receiver_rut)
        _sub(dd, "RSR", document.receiver_name[:40].strip())
        _sub(dd, "MNT", document.total_amount)
        _sub(dd, "IT1", document.lines[0].description[:40].strip())
        dd.append(caf.caf_element())
        _sub(dd, "TSTED", format_timestamp(document.stamped_at))

        ted = etree.Element("TED", version="1.0")
        ted.append(dd)
        frmt = etree.SubElement(ted, "FRMT", algoritmo=TED_ALGORITHM)
        frmt.text = sign_stamp(dd, caf.private_key())

        documento.append(ted)
        requalify(ted, SII_NS)

    # ------------------------------------------------------------------
    # EnvioDTE
    # ------------------------------------------------------------------

    def build_submission_envelope(
        self,
        signed_documents: list[bytes],
        *,
        issuer_rut: str,
        sender_rut: str,
        resolution_date: date,
        resolution_number: int,
        signed_at: datetime,
        receiver_rut: str = SII_RUT,
        set_id: str = DEFAULT_SET_ID,
    ) -> bytes:
        """
        Wrap signed DTEs in an unsigned EnvioDTE.

        Args:
            signed_documents: Signed DTE documents, each as produced by the
                signer.  They are embedded unchanged.
            issuer_rut: RutEmisor of every document in the set.
            sender_rut: RUT of the person whose certificate signs the set.
            resolution_date / resolution_number: The issuer's SII resolution.
            signed_at: TmstFirmaEnv.

        Returns:
            C14N bytes of the EnvioDTE, ready for sign_submission().
        """
        if not signed_documents:
            raise SerializationError("An EnvioDTE needs at least one document")

        dtes = []
        for raw in signed_documents:
            try:
                dte = parse(raw)
            except etree.XMLSyntaxError as exc:
                raise SerializationError(f"Signed document is not well-formed: {exc}") from exc
            if dte.tag != sii("DTE"):
                raise SerializationError(f"Expected a DTE element, got {local_name(dte)}")
            dtes.append(dte)

        type_path = "/".join(sii(tag) for tag in ("Documento", "Encabezado", "IdDoc", "TipoDTE"))
        counts = Counter(int(dte.findtext(type_path)) for dte in dtes)

        root = etree.Element(sii("EnvioDTE"), nsmap={None: SII_NS}, version="1.0")
        set_dte = etree.SubElement(root, sii("SetDTE"), ID=set_id)
        caratula = etree.SubElement(set_dte, sii("Caratula"), version="1.0")
        _sub(caratula, "RutEmisor", issuer_rut)
        _sub(caratula, "RutEnvia", sender_rut)
        _sub(caratula, "RutReceptor", receiver_rut)
        _sub(caratula, "FchResol", resolution_date)
        _sub(caratula, "NroResol", resolution_number)
        _sub(caratula, "TmstFirmaEnv", format_timestamp(signed_at))
        for doc_type in sorted(counts):
            subtotal = etree.SubElement(caratula, sii("SubTotDTE"))
            _sub(subtotal, "TpoDTE", doc_type)
            _sub(subtotal, "NroDTE", counts[doc_type])
        for dte in dtes:
            set_dte.append(dte)

        self.validate(root)
        return c14n(root)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, root: etree._Element) -> None:
        """
        Validate root against the configured schema.

        Raises:
            SchemaViolationError: With the first offending element's path
                and every schema message.
        """
        if not self._validate:
            return
        schema = load_schema(str(self._schema_path))
        with _schema_lock:
            valid = schema.validate(root)
            errors = list(schema.error_log)
        if valid:
            return

        path = self._error_path(root, errors[0]) if errors else element_path(root)
        messages = [error.message for error in errors]
        logger.error(
            "schema_violation",
            extra={"element_path": path, "messages": messages},
        )
        raise SchemaViolationError(path, messages)

    @staticmethod
    def _error_path(root: etree._Element, error) -> str:
        xpath = getattr(error, "path", None)
        if xpath:
            try:
                found = root.getroottree().xpath(xpath)
            except etree.XPathError:
                found = []
            if found and isinstance(found[0], etree._Element):
                return element_path(found[0])
            return xpath
        return element_path(root)
