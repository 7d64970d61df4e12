"""
DigitalSigner tests.

Verifies:
- A signed DTE verifies, and any change to it does not
- Unusable certificates are refused before anything is signed
- Credentials sign only their own tenant's documents
- Seed and EnvioDTE signatures verify
"""

import base64
import hashlib
from dataclasses import FrozenInstanceError, replace
from datetime import date, datetime, timezone

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

from dte_kernel.domain.credentials import SigningCredentials
from dte_kernel.domain.dtos import CanonicalXml
from dte_kernel.exceptions import (
    CertificateInvalidError,
    CredentialScopeError,
    SignatureVerificationError,
    SigningError,
)
from dte_kernel.services.digital_signer import DigitalSigner, _int_b64
from dte_kernel.services.document_builder import DocumentBuilder
from dte_kernel.services.xml_serializer import XmlSerializer
from dte_kernel.utils.xml import DS_NS, c14n, ds, parse


@pytest.fixture
def signer(clock):
    return DigitalSigner(clock)


@pytest.fixture
def canonical(make_source, clock):
    document = DocumentBuilder().build(make_source())
    document.folio = 1
    document.stamped_at = clock.now()
    return XmlSerializer().serialize(document)


@pytest.fixture
def ca(other_key, make_certificate):
    return make_certificate(other_key, "Autoridad Certificadora", ca=True)


@pytest.fixture
def issued_leaf(signing_key, other_key, make_certificate):
    """Leaf for signing_key issued by the ``ca`` fixture."""
    return make_certificate(
        signing_key, "Juan Perez",
        issuer_key=other_key, issuer_name="Autoridad Certificadora",
    )


class TestSignAndVerify:

    def test_signed_document_verifies(self, signer, canonical, credentials):
        envelope = signer.sign_document(canonical, credentials)

        assert signer.verify(envelope.signed_xml) == 1
        assert envelope.xml_id == "T33F1"
        assert envelope.canonical_xml == canonical.content
        assert envelope.canonical_sha256 == canonical.sha256
        assert envelope.certificate_subject == credentials.subject
        assert len(envelope.certificate_chain) == 1
        assert envelope.signed_at == datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def test_signature_follows_documento(self, signer, canonical, credentials):
        root = parse(signer.sign_document(canonical, credentials).signed_xml)

        assert [child.tag.split("}")[1] for child in root] == ["Documento", "Signature"]
        reference = root.find(f"{ds('Signature')}/{ds('SignedInfo')}/{ds('Reference')}")
        assert reference.get("URI") == "#T33F1"

    def test_signing_is_deterministic(self, signer, canonical, credentials):
        first = signer.sign_document(canonical, credentials)
        second = signer.sign_document(canonical, credentials)

        assert first.signed_xml == second.signed_xml

    def test_tampered_document_fails(self, signer, canonical, credentials):
        signed = signer.sign_document(canonical, credentials).signed_xml
        tampered = signed.replace(b"<MntTotal>2380</MntTotal>", b"<MntTotal>2381</MntTotal>")
        assert tampered != signed

        with pytest.raises(SignatureVerificationError, match="digest mismatch"):
            signer.verify(tampered)

    def test_tampered_digest_fails(self, signer, canonical, credentials):
        root = parse(signer.sign_document(canonical, credentials).signed_xml)
        digest = root.find(f".//{ds('DigestValue')}")
        digest.text = digest.text[::-1]

        with pytest.raises(SignatureVerificationError):
            signer.verify(c14n(root))

    def test_mismatched_key_value_fails(self, signer, canonical, credentials, other_key):
        root = parse(signer.sign_document(canonical, credentials).signed_xml)
        root.find(f".//{ds('Modulus')}").text = _int_b64(other_key.public_key().public_numbers().n)

        with pytest.raises(SignatureVerificationError, match="RSAKeyValue does not match"):
            signer.verify(c14n(root))

    def test_unsigned_document_fails(self, signer, canonical):
        with pytest.raises(SignatureVerificationError, match="no Signature"):
            signer.verify(canonical.content)

    def test_signing_is_logged(self, signer, canonical, credentials, captured_logs):
        signer.sign_document(canonical, credentials)

        signed = [r for r in captured_logs() if r["message"] == "document_signed"]
        assert signed[0]["folio"] == 1
        assert "private_key" not in signed[0]


class TestCanonicalBytes:
    """Digest and SignatureValue are computed over conforming C14N output."""

    CONTENT = (
        b'<DTE xmlns="http://www.sii.cl/SiiDte" version="1.0">'
        b'<Documento ID="T33F9"><Encabezado><IdDoc><TipoDTE>33</TipoDTE><Folio>9</Folio></IdDoc>'
        b"</Encabezado></Documento></DTE>"
    )
    CANONICAL_DOCUMENTO = (
        b'<Documento xmlns="http://www.sii.cl/SiiDte" ID="T33F9">'
        b"<Encabezado><IdDoc><TipoDTE>33</TipoDTE><Folio>9</Folio></IdDoc></Encabezado></Documento>"
    )

    @pytest.fixture
    def envelope(self, signer, credentials):
        canonical = CanonicalXml(
            content=self.CONTENT,
            document_id="T33F9",
            tenant_id=credentials.tenant_id,
            document_type=33,
            folio=9,
        )
        return signer.sign_document(canonical, credentials)

    def test_digest_of_documento(self, envelope):
        expected = base64.b64encode(hashlib.sha1(self.CANONICAL_DOCUMENTO).digest()).decode("ascii")

        assert envelope.digest_value == expected

    def test_signature_value_over_signed_info(self, envelope, credentials):
        signed_info = (
            '<SignedInfo xmlns="http://www.w3.org/2000/09/xmldsig#">'
            '<CanonicalizationMethod Algorithm="http://www.w3.org/TR/2001/REC-xml-c14n-20010315">'
            "</CanonicalizationMethod>"
            '<SignatureMethod Algorithm="http://www.w3.org/2000/09/xmldsig#rsa-sha1"></SignatureMethod>'
            '<Reference URI="#T33F9">'
            '<DigestMethod Algorithm="http://www.w3.org/2000/09/xmldsig#sha1"></DigestMethod>'
            f"<DigestValue>{envelope.digest_value}</DigestValue>"
            "</Reference></SignedInfo>"
        ).encode("ascii")

        credentials.certificate.public_key().verify(
            base64.b64decode(envelope.signature_value),
            signed_info,
            padding.PKCS1v15(),
            hashes.SHA1(),
        )

    def test_enveloped_signature_as_root_is_refused(self, signer):
        root = etree.Element(ds("Signature"), nsmap={None: DS_NS})
        signed_info = etree.SubElement(root, ds("SignedInfo"))
        etree.SubElement(signed_info, ds("Reference"), URI="")

        with pytest.raises(SignatureVerificationError, match="document root"):
            signer.verify(c14n(root))


class TestCertificatePolicy:
    """Refusals happen before any signature is produced."""

    def test_expired(self, signer, canonical, credentials, signing_key, make_certificate, expired_window):
        not_before, not_after = expired_window
        expired = make_certificate(signing_key, "Juan Perez", not_before=not_before, not_after=not_after)

        with pytest.raises(CertificateInvalidError) as exc_info:
            signer.sign_document(canonical, replace(credentials, certificate=expired))

        assert exc_info.value.reason == "expired"
        assert exc_info.value.code == "CERTIFICATE_INVALID"

    def test_not_yet_valid(self, signer, canonical, credentials, signing_key, make_certificate):
        future = make_certificate(
            signing_key, "Juan Perez",
            not_before=datetime(2024, 6, 1, tzinfo=timezone.utc),
            not_after=datetime(2026, 6, 1, tzinfo=timezone.utc),
        )

        with pytest.raises(CertificateInvalidError) as exc_info:
            signer.sign_document(canonical, replace(credentials, certificate=future))

        assert exc_info.value.reason == "not_yet_valid"

    def test_key_mismatch(self, signer, canonical, credentials, other_key, make_certificate):
        foreign = make_certificate(other_key, "Otra Persona")

        with pytest.raises(CertificateInvalidError) as exc_info:
            signer.sign_document(canonical, replace(credentials, certificate=foreign))

        assert exc_info.value.reason == "key_mismatch"

    def test_chain_must_link(self, signer, canonical, credentials, issued_leaf, caf_key, make_certificate):
        unrelated = make_certificate(caf_key, "Otra Autoridad", ca=True)

        with pytest.raises(CertificateInvalidError) as exc_info:
            signer.sign_document(
                canonical, replace(credentials, certificate=issued_leaf, chain=(unrelated,)),
            )

        assert exc_info.value.reason == "chain_untrusted"

    def test_linked_chain_is_attached(self, signer, canonical, credentials, issued_leaf, ca):
        envelope = signer.sign_document(
            canonical, replace(credentials, certificate=issued_leaf, chain=(ca,)),
        )

        assert len(envelope.certificate_chain) == 2
        assert signer.verify(envelope.signed_xml) == 1

    def test_trust_anchor_required(self, clock, canonical, credentials, issued_leaf, ca):
        signer = DigitalSigner(clock, trust_anchors=(ca,), require_trusted_chain=True)

        # Issued by the anchor: accepted with or without the anchor in the chain
        signer.sign_document(canonical, replace(credentials, certificate=issued_leaf))
        signer.sign_document(canonical, replace(credentials, certificate=issued_leaf, chain=(ca,)))

        with pytest.raises(CertificateInvalidError) as exc_info:
            signer.sign_document(canonical, credentials)
        assert exc_info.value.reason == "chain_untrusted"

    def test_private_key_not_in_repr(self, credentials):
        assert "RSAPrivateKey" not in repr(credentials)


class TestCredentialScope:

    def test_other_tenant_refused(self, signer, canonical, credentials, captured_logs):
        foreign = replace(credentials, tenant_id="globex")

        with pytest.raises(CredentialScopeError) as exc_info:
            signer.sign_document(canonical, foreign)

        assert exc_info.value.credential_tenant_id == "globex"
        assert exc_info.value.document_tenant_id == "acme"
        assert any(r["message"] == "credential_scope_violation" for r in captured_logs())


class TestSeedAndSubmission:

    def test_seed_signature_verifies(self, signer, credentials):
        signed = signer.sign_seed("012345678901", credentials)

        root = parse(signed)
        assert root.tag == "getToken"
        assert root.findtext("item/Semilla") == "012345678901"
        assert signer.verify(signed) == 1

    def test_tampered_seed_fails(self, signer, credentials):
        signed = signer.sign_seed("012345678901", credentials)

        with pytest.raises(SignatureVerificationError):
            signer.verify(signed.replace(b"012345678901", b"999999999999"))

    def test_submission_carries_both_signatures(self, signer, canonical, credentials, clock):
        signed_document = signer.sign_document(canonical, credentials).signed_xml
        envelope = XmlSerializer().build_submission_envelope(
            [signed_document],
            issuer_rut="76086428-5",
            sender_rut=credentials.sender_rut,
            resolution_date=date(2014, 8, 22),
            resolution_number=80,
            signed_at=clock.now(),
        )

        signed_submission = signer.sign_submission(envelope, credentials)

        assert signed_submission.startswith(b"<?xml version='1.0' encoding='ISO-8859-1'?>")
        assert signer.verify(signed_submission) == 2

    def test_submission_requires_set_id(self, signer, credentials):
        with pytest.raises(SigningError, match="SetDTE"):
            signer.sign_submission(b"<EnvioDTE/>", credentials)


def test_credentials_are_frozen(credentials):
    with pytest.raises(FrozenInstanceError):
        credentials.tenant_id = "globex"
    assert isinstance(credentials, SigningCredentials)
