"""
XmlSerializer tests.

Verifies:
- Output is canonical: serializing twice gives identical bytes
- Documents are validated against the bundled schema before leaving
- The TED stamp verifies against the CAF's own public key
- The EnvioDTE carátula counts documents per type
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from dte_kernel.domain.caf import parse_caf
from dte_kernel.domain.dtos import LineSpec
from dte_kernel.exceptions import SchemaViolationError, SerializationError
from dte_kernel.services.document_builder import DocumentBuilder
from dte_kernel.services.xml_serializer import (
    XmlSerializer,
    document_xml_id,
    format_decimal,
    format_timestamp,
    verify_stamp,
)
from dte_kernel.utils.xml import SII_NS, c14n, parse, sii


@pytest.fixture
def serializer():
    return XmlSerializer()


@pytest.fixture
def make_document(make_source, clock):
    """Draft with folio and signing timestamp, ready to serialize."""

    def _make(folio: int = 1, **overrides):
        document = DocumentBuilder().build(make_source(**overrides))
        document.folio = folio
        document.stamped_at = clock.now()
        return document

    return _make


def _text(root, *path) -> str | None:
    return root.findtext("/".join(sii(tag) for tag in path))


class TestHelpers:

    def test_document_xml_id(self):
        assert document_xml_id(33, 1) == "T33F1"

    @pytest.mark.parametrize(
        "value,expected",
        [
            (Decimal("1000.500"), "1000.5"),
            (Decimal("2E+3"), "2000"),
            (Decimal("0.000"), "0"),
            (Decimal("19.00"), "19"),
        ],
    )
    def test_format_decimal(self, value, expected):
        assert format_decimal(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            # Chilean summer time, UTC-3
            (datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc), "2024-01-15T09:00:00"),
            # Chilean standard time, UTC-4
            (datetime(2024, 7, 15, 12, 0, tzinfo=timezone.utc), "2024-07-15T08:00:00"),
            (datetime(2024, 7, 15, 12, 0), "2024-07-15T08:00:00"),
            (datetime(2024, 1, 15, 1, 30, tzinfo=timezone.utc), "2024-01-14T22:30:00"),
        ],
    )
    def test_format_timestamp_in_santiago_time(self, value, expected):
        assert format_timestamp(value) == expected


class TestSerialize:

    def test_reserialization_is_byte_identical(self, serializer, make_document):
        document = make_document()

        first = serializer.serialize(document)
        second = serializer.serialize(document)

        assert first.content == second.content
        assert first.sha256 == second.sha256

    def test_content_and_identifiers(self, serializer, make_document):
        canonical = serializer.serialize(make_document(folio=42))

        root = parse(canonical.content)
        assert root.tag == sii("DTE")
        assert canonical.document_id == "T33F42"
        assert root.find(sii("Documento")).get("ID") == "T33F42"
        assert _text(root, "Documento", "Encabezado", "IdDoc", "Folio") == "42"
        assert _text(root, "Documento", "Encabezado", "Totales", "MntNeto") == "2000"
        assert _text(root, "Documento", "Encabezado", "Totales", "TasaIVA") == "19"
        assert _text(root, "Documento", "Encabezado", "Totales", "IVA") == "380"
        assert _text(root, "Documento", "Encabezado", "Totales", "MntTotal") == "2380"
        assert _text(root, "Documento", "TmstFirma") == "2024-01-15T09:00:00"

    def test_line_amount_printed_rounded(self, serializer, make_document):
        line = LineSpec("Hora de soporte", Decimal("0.5"), Decimal("333"))
        root = parse(serializer.serialize(make_document(lines=(line,))).content)

        assert _text(root, "Documento", "Detalle", "QtyItem") == "0.5"
        assert _text(root, "Documento", "Detalle", "MontoItem") == "167"

    def test_missing_folio(self, serializer, make_document):
        document = make_document()
        document.folio = None

        with pytest.raises(SerializationError, match="no folio"):
            serializer.serialize(document)

    def test_missing_timestamp(self, serializer, make_document):
        document = make_document()
        document.stamped_at = None

        with pytest.raises(SerializationError, match="signing timestamp"):
            serializer.serialize(document)

    def test_schema_violation_names_element(self, serializer, make_document):
        """An empty receiver name drops RznSocRecep, which the schema requires."""
        document = make_document()
        document.receiver_name = ""

        with pytest.raises(SchemaViolationError) as exc_info:
            serializer.serialize(document)

        assert exc_info.value.element_path.startswith("/DTE/Documento/Encabezado/Receptor")
        assert exc_info.value.messages

    def test_validation_can_be_disabled(self, make_document):
        document = make_document()
        document.receiver_name = ""

        canonical = XmlSerializer(validate=False).serialize(document)

        assert b"RznSocRecep" not in canonical.content


class TestStamp:

    def test_stamp_verifies(self, serializer, make_document, make_caf):
        caf = parse_caf(make_caf())
        canonical = serializer.serialize(make_document(folio=7), caf=caf)

        ted = parse(canonical.content).find(f".//{{{SII_NS}}}TED")
        assert ted is not None
        assert verify_stamp(ted) is True
        assert ted.findtext(f"{{{SII_NS}}}DD/{{{SII_NS}}}F") == "7"
        assert ted.findtext(f"{{{SII_NS}}}DD/{{{SII_NS}}}MNT") == "2380"

    def test_tampered_stamp_fails(self, serializer, make_document, make_caf):
        caf = parse_caf(make_caf())
        canonical = serializer.serialize(make_document(), caf=caf)

        ted = parse(canonical.content).find(f".//{{{SII_NS}}}TED")
        ted.find(f"{{{SII_NS}}}DD/{{{SII_NS}}}MNT").text = "1"

        assert verify_stamp(ted) is False

    def test_stamped_output_is_stable(self, serializer, make_document, make_caf):
        caf = parse_caf(make_caf())
        document = make_document()

        assert serializer.serialize(document, caf=caf).content == serializer.serialize(document, caf=caf).content

    def test_caf_must_cover_folio(self, serializer, make_document, make_caf):
        caf = parse_caf(make_caf(start=50, end=60))

        with pytest.raises(SerializationError, match="does not cover"):
            serializer.serialize(make_document(folio=1), caf=caf)


class TestSubmissionEnvelope:

    def test_caratula(self, serializer, make_document, clock):
        documents = [serializer.serialize(make_document(folio=n)).content for n in (1, 2)]

        envelope = serializer.build_submission_envelope(
            documents,
            issuer_rut="76086428-5",
            sender_rut="12345678-5",
            resolution_date=date(2014, 8, 22),
            resolution_number=80,
            signed_at=clock.now(),
        )

        root = parse(envelope)
        assert root.tag == sii("EnvioDTE")
        caratula = ("SetDTE", "Caratula")
        assert _text(root, *caratula, "RutEmisor") == "76086428-5"
        assert _text(root, *caratula, "RutEnvia") == "12345678-5"
        assert _text(root, *caratula, "RutReceptor") == "60803000-K"
        assert _text(root, *caratula, "FchResol") == "2014-08-22"
        assert _text(root, *caratula, "NroResol") == "80"
        assert _text(root, *caratula, "SubTotDTE", "TpoDTE") == "33"
        assert _text(root, *caratula, "SubTotDTE", "NroDTE") == "2"
        assert len(root.findall(f"{sii('SetDTE')}/{sii('DTE')}")) == 2

    def test_embeds_documents_unchanged(self, serializer, make_document, clock):
        document = serializer.serialize(make_document()).content

        envelope = serializer.build_submission_envelope(
            [document],
            issuer_rut="76086428-5",
            sender_rut="12345678-5",
            resolution_date=date(2014, 8, 22),
            resolution_number=80,
            signed_at=clock.now(),
        )

        dte = parse(envelope).find(f"{sii('SetDTE')}/{sii('DTE')}")
        assert c14n(dte) == document

    def test_requires_documents(self, serializer, clock):
        with pytest.raises(SerializationError, match="at least one"):
            serializer.build_submission_envelope(
                [],
                issuer_rut="76086428-5",
                sender_rut="12345678-5",
                resolution_date=date(2014, 8, 22),
                resolution_number=80,
                signed_at=clock.now(),
            )

    def test_rejects_foreign_root(self, serializer, clock):
        with pytest.raises(SerializationError, match="Expected a DTE"):
            serializer.build_submission_envelope(
                [b"<Other/>"],
                issuer_rut="76086428-5",
                sender_rut="12345678-5",
                resolution_date=date(2014, 8, 22),
                resolution_number=80,
                signed_at=clock.now(),
            )
