"""
DigitalSigner -- enveloped XML-DSig signatures for SII documents.

Responsibility:
    Signs canonical DTE bytes, the EnvioDTE submission set and the
    authentication seed with a tenant's certificate, and verifies such
    signatures.  Profile required by the SII:

        CanonicalizationMethod  C14N 1.0 (inclusive, no comments)
        SignatureMethod         rsa-sha1
        DigestMethod            sha1
        Reference URI           #<ID of Documento / SetDTE>, or "" with the
                                enveloped-signature transform for the seed
        KeyInfo                 RSAKeyValue + X509Data (leaf, then chain)

Architecture position:
    Kernel > Services.  No session, no persistence.  sign() returns a
    transient SignedEnvelope for the caller to attach and flush.

Invariants enforced:
    - The certificate is checked (validity window, revocation, key match,
      chain) BEFORE any digest or signature is computed.
    - Credentials are tenant-scoped: sign_document() refuses to sign a
      document of another tenant.
    - The private key is used for the duration of the call only.  It is
      never stored on the signer, written to an envelope, or logged.

Failure modes:
    - CertificateInvalidError (expired, not_yet_valid, revoked,
      chain_untrusted, key_mismatch).
    - CredentialScopeError.
    - SignatureVerificationError from verify().
"""

import base64
import copy
from collections.abc import Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import Encoding
from lxml import etree

from dte_kernel.domain.clock import Clock, SystemClock
from dte_kernel.domain.credentials import SigningCredentials
from dte_kernel.domain.dtos import CanonicalXml
from dte_kernel.exceptions import (
    CertificateInvalidError,
    CredentialScopeError,
    SignatureVerificationError,
    SigningError,
)
from dte_kernel.logging_config import get_logger
from dte_kernel.models.signed_envelope import SignedEnvelope
from dte_kernel.utils.xml import (
    C14N_ALGORITHM,
    DS_NS,
    ENVELOPED_TRANSFORM,
    RSA_SHA1_ALGORITHM,
    SHA1_ALGORITHM,
    c14n,
    ds,
    parse,
)

logger = get_logger("services.digital_signer")

SEED_ROOT = "getToken"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _int_b64(value: int) -> str:
    return _b64(value.to_bytes((value.bit_length() + 7) // 8, "big"))


def _sha1_b64(data: bytes) -> str:
    digest = hashes.Hash(hashes.SHA1())
    digest.update(data)
    return _b64(digest.finalize())


def _certificate_b64(certificate: x509.Certificate) -> str:
    return _b64(certificate.public_bytes(Encoding.DER))


class DigitalSigner:
    """
    XML-DSig signer and verifier.

    Args:
        clock: Time source for certificate validity checks.
        trust_anchors: Certificates a chain must end in (or be issued by)
            when require_trusted_chain is set.
        require_trusted_chain: Refuse certificates not anchored in
            trust_anchors.
        crls: Revocation lists; a listed certificate is refused.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        trust_anchors: Sequence[x509.Certificate] = (),
        require_trusted_chain: bool = False,
        crls: Sequence[x509.CertificateRevocationList] = (),
    ):
        self._clock = clock or SystemClock()
        self._trust_anchors = tuple(trust_anchors)
        self._require_trusted_chain = require_trusted_chain
        self._crls = tuple(crls)

    # ------------------------------------------------------------------
    # Certificate policy
    # ------------------------------------------------------------------

    def check_certificate(
        self,
        certificate: x509.Certificate,
        private_key: rsa.RSAPrivateKey,
        chain: Sequence[x509.Certificate] = (),
    ) -> None:
        """
        Refuse unusable signing material.

        Raises:
            CertificateInvalidError: With the first failing reason.
        """
        subject = certificate.subject.rfc4514_string()
        now = self._clock.now()

        for cert in (certificate, *chain):
            cert_subject = cert.subject.rfc4514_string()
            if now < cert.not_valid_before_utc:
                raise CertificateInvalidError(
                    "not_yet_valid", cert_subject,
                    f"valid from {cert.not_valid_before_utc.isoformat()}",
                )
            if now > cert.not_valid_after_utc:
                raise CertificateInvalidError(
                    "expired", cert_subject,
                    f"expired {cert.not_valid_after_utc.isoformat()}",
                )
            for crl in self._crls:
                if crl.issuer == cert.issuer and crl.get_revoked_certificate_by_serial_number(cert.serial_number):
                    raise CertificateInvalidError("revoked", cert_subject, f"serial {cert.serial_number:x}")

        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CertificateInvalidError("key_mismatch", subject, "signing key is not RSA")
        if certificate.public_key().public_numbers() != private_key.public_key().public_numbers():
            raise CertificateInvalidError("key_mismatch", subject, "private key does not match certificate")

        path = (certificate, *chain)
        for child, issuer in zip(path, path[1:]):
            try:
                child.verify_directly_issued_by(issuer)
            except (ValueError, TypeError, InvalidSignature):
                raise CertificateInvalidError(
                    "chain_untrusted", subject,
                    f"{child.subject.rfc4514_string()} is not issued by {issuer.subject.rfc4514_string()}",
                ) from None

        if self._require_trusted_chain and not self._is_anchored(path[-1]):
            raise CertificateInvalidError("chain_untrusted", subject, "chain does not end in a trust anchor")

    def _is_anchored(self, top: x509.Certificate) -> bool:
        for anchor in self._trust_anchors:
            if top == anchor:
                return True
            try:
                top.verify_directly_issued_by(anchor)
            except (ValueError, TypeError, InvalidSignature):
                continue
            return True
        return False

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(
        self,
        canonical_xml: CanonicalXml,
        certificate: x509.Certificate,
        private_key: rsa.RSAPrivateKey,
        chain: Sequence[x509.Certificate] = (),
    ) -> SignedEnvelope:
        """
        Sign a canonical DTE.

        The Signature element is appended to the DTE root after Documento,
        referencing ``#<Documento ID>``.

        Returns:
            A transient SignedEnvelope (document_id unset).

        Raises:
            CertificateInvalidError: Before any output is produced.
            SigningError: The canonical XML has no Documento with the ID.
        """
        self.check_certificate(certificate, private_key, chain)

        root = parse(canonical_xml.content)
        targets = root.xpath("//*[@ID=$id]", id=canonical_xml.document_id)
        if len(targets) != 1:
            raise SigningError(f"Expected one element with ID {canonical_xml.document_id!r}, found {len(targets)}")

        signature = self._attach_signature(
            root,
            reference_uri=f"#{canonical_xml.document_id}",
            digest_value=_sha1_b64(c14n(targets[0])),
            certificate=certificate,
            private_key=private_key,
            chain=chain,
        )
        signed_xml = c14n(root)

        envelope = SignedEnvelope(
            tenant_id=canonical_xml.tenant_id,
            xml_id=canonical_xml.document_id,
            canonical_xml=canonical_xml.content,
            canonical_sha256=canonical_xml.sha256,
            signed_xml=signed_xml,
            signature_xml=c14n(signature),
            digest_value=signature.findtext(f"{ds('SignedInfo')}/{ds('Reference')}/{ds('DigestValue')}"),
            signature_value=signature.findtext(ds("SignatureValue")),
            certificate_chain=[
                cert.public_bytes(Encoding.PEM).decode("ascii") for cert in (certificate, *chain)
            ],
            certificate_subject=certificate.subject.rfc4514_string(),
            certificate_serial=format(certificate.serial_number, "x"),
            certificate_not_after=certificate.not_valid_after_utc,
            signed_at=self._clock.now(),
        )

        logger.info(
            "document_signed",
            extra={
                "tenant_id": canonical_xml.tenant_id,
                "document_type": canonical_xml.document_type,
                "folio": canonical_xml.folio,
                "xml_id": canonical_xml.document_id,
                "digest_value": envelope.digest_value,
                "certificate_subject": envelope.certificate_subject,
                "certificate_serial": envelope.certificate_serial,
            },
        )
        return envelope

    def sign_document(self, canonical_xml: CanonicalXml, credentials: SigningCredentials) -> SignedEnvelope:
        """
        sign() with tenant-scoped credentials.

        Raises:
            CredentialScopeError: credentials belong to another tenant.
        """
        if credentials.tenant_id != canonical_xml.tenant_id:
            logger.error(
                "credential_scope_violation",
                extra={
                    "credential_tenant_id": credentials.tenant_id,
                    "document_tenant_id": canonical_xml.tenant_id,
                },
            )
            raise CredentialScopeError(credentials.tenant_id, canonical_xml.tenant_id)
        return self.sign(
            canonical_xml,
            credentials.certificate,
            credentials.private_key,
            credentials.chain,
        )

    def sign_submission(
        self,
        envelope_xml: bytes,
        credentials: SigningCredentials,
        set_id: str = "SetDoc",
    ) -> bytes:
        """
        Sign an EnvioDTE over its SetDTE.

        Returns:
            The signed envelope encoded ISO-8859-1 with an XML declaration,
            the form the upload endpoint expects.
        """
        self.check_certificate(credentials.certificate, credentials.private_key, credentials.chain)

        root = parse(envelope_xml)
        targets = root.xpath("//*[@ID=$id]", id=set_id)
        if len(targets) != 1:
            raise SigningError(f"Expected one SetDTE with ID {set_id!r}, found {len(targets)}")

        self._attach_signature(
            root,
            reference_uri=f"#{set_id}",
            digest_value=_sha1_b64(c14n(targets[0])),
            certificate=credentials.certificate,
            private_key=credentials.private_key,
            chain=credentials.chain,
        )
        logger.info(
            "submission_signed",
            extra={
                "tenant_id": credentials.tenant_id,
                "set_id": set_id,
                "document_count": len(targets[0].findall("{*}DTE")),
            },
        )
        return etree.tostring(root, encoding="ISO-8859-1", xml_declaration=True)

    def sign_seed(self, seed: str, credentials: SigningCredentials) -> bytes:
        """
        Sign the authentication seed for the token exchange.

        Produces ``<getToken><item><Semilla>seed</Semilla></item>`` with an
        enveloped signature over the whole document.
        """
        self.check_certificate(credentials.certificate, credentials.private_key, credentials.chain)

        root = etree.Element(SEED_ROOT)
        item = etree.SubElement(root, "item")
        etree.SubElement(item, "Semilla").text = seed

        # Digest is taken before the Signature exists, which is exactly
        # what the enveloped-signature transform reproduces.
        self._attach_signature(
            root,
            reference_uri="",
            digest_value=_sha1_b64(c14n(root)),
            certificate=credentials.certificate,
            private_key=credentials.private_key,
            chain=credentials.chain,
            enveloped=True,
        )
        return etree.tostring(root, encoding="UTF-8", xml_declaration=True)

    @staticmethod
    def _attach_signature(
        parent: etree._Element,
        *,
        reference_uri: str,
        digest_value: str,
        certificate: x509.Certificate,
        private_key: rsa.RSAPrivateKey,
        chain: Sequence[x509.Certificate],
        enveloped: bool = False,
    ) -> etree._Element:
        # The default xmldsig namespace overrides the SII default namespace.
        signature = etree.SubElement(parent, ds("Signature"), nsmap={None: DS_NS})
        signed_info = etree.SubElement(signature, ds("SignedInfo"))
        etree.SubElement(signed_info, ds("CanonicalizationMethod"), Algorithm=C14N_ALGORITHM)
        etree.SubElement(signed_info, ds("SignatureMethod"), Algorithm=RSA_SHA1_ALGORITHM)
        reference = etree.SubElement(signed_info, ds("Reference"), URI=reference_uri)
        if enveloped:
            transforms = etree.SubElement(reference, ds("Transforms"))
            etree.SubElement(transforms, ds("Transform"), Algorithm=ENVELOPED_TRANSFORM)
        etree.SubElement(reference, ds("DigestMethod"), Algorithm=SHA1_ALGORITHM)
        etree.SubElement(reference, ds("DigestValue")).text = digest_value

        # SignedInfo is canonicalized in place so its namespace context
        # matches what a verifier sees in the final document.
        signature_bytes = private_key.sign(c14n(signed_info), padding.PKCS1v15(), hashes.SHA1())
        etree.SubElement(signature, ds("SignatureValue")).text = _b64(signature_bytes)

        numbers = private_key.public_key().public_numbers()
        key_info = etree.SubElement(signature, ds("KeyInfo"))
        key_value = etree.SubElement(key_info, ds("KeyValue"))
        rsa_key_value = etree.SubElement(key_value, ds("RSAKeyValue"))
        etree.SubElement(rsa_key_value, ds("Modulus")).text = _int_b64(numbers.n)
        etree.SubElement(rsa_key_value, ds("Exponent")).text = _int_b64(numbers.e)
        x509_data = etree.SubElement(key_info, ds("X509Data"))
        for cert in (certificate, *chain):
            etree.SubElement(x509_data, ds("X509Certificate")).text = _certificate_b64(cert)
        return signature

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, signed_xml: bytes) -> int:
        """
        Verify every enveloped signature in signed_xml.

        Checks each reference digest and each SignatureValue against the
        first X509Certificate of its KeyInfo.

        Returns:
            Number of signatures verified.

        Raises:
            SignatureVerificationError: On the first signature that fails.
        """
        try:
            root = parse(signed_xml)
        except etree.XMLSyntaxError as exc:
            raise SignatureVerificationError(f"not well-formed XML: {exc}") from exc

        signatures = root.findall(f".//{ds('Signature')}")
        if root.tag == ds("Signature"):
            signatures.insert(0, root)
        if not signatures:
            raise SignatureVerificationError("no Signature element")

        for signature in signatures:
            self._verify_one(root, signature)
        return len(signatures)

    @staticmethod
    def _verify_one(root: etree._Element, signature: etree._Element) -> None:
        signed_info = signature.find(ds("SignedInfo"))
        reference = signed_info.find(ds("Reference")) if signed_info is not None else None
        if reference is None:
            raise SignatureVerificationError("Signature has no SignedInfo/Reference")

        uri = reference.get("URI", "")
        if uri == "":
            # Enveloped-signature transform: the document minus this Signature
            if signature is root:
                raise SignatureVerificationError("enveloped signature cannot be the document root")
            document = copy.deepcopy(root)
            twin = document.getroottree().xpath(root.getroottree().getpath(signature))[0]
            twin.getparent().remove(twin)
            referenced = c14n(document)
        elif uri.startswith("#"):
            targets = root.xpath("//*[@ID=$id]", id=uri[1:])
            if len(targets) != 1:
                raise SignatureVerificationError(f"reference {uri} resolves to {len(targets)} elements")
            referenced = c14n(targets[0])
        else:
            raise SignatureVerificationError(f"unsupported reference URI {uri!r}")

        expected_digest = reference.findtext(ds("DigestValue"))
        if _sha1_b64(referenced) != (expected_digest or "").strip():
            raise SignatureVerificationError(f"digest mismatch for reference {uri or '(document)'}")

        cert_text = signature.findtext(f"{ds('KeyInfo')}/{ds('X509Data')}/{ds('X509Certificate')}")
        if not cert_text:
            raise SignatureVerificationError("KeyInfo has no X509Certificate")
        try:
            certificate = x509.load_der_x509_certificate(base64.b64decode("".join(cert_text.split())))
        except ValueError as exc:
            raise SignatureVerificationError("X509Certificate is not readable") from exc

        key_value = signature.find(f"{ds('KeyInfo')}/{ds('KeyValue')}/{ds('RSAKeyValue')}")
        if key_value is not None:
            numbers = certificate.public_key().public_numbers()
            modulus = key_value.findtext(ds("Modulus")) or ""
            exponent = key_value.findtext(ds("Exponent")) or ""
            if (_int_b64(numbers.n), _int_b64(numbers.e)) != ("".join(modulus.split()), "".join(exponent.split())):
                raise SignatureVerificationError("RSAKeyValue does not match the X509Certificate")

        signature_value = signature.findtext(ds("SignatureValue")) or ""
        try:
            certificate.public_key().verify(
                base64.b64decode("".join(signature_value.split())),
                c14n(signed_info),
                padding.PKCS1v15(),
                hashes.SHA1(),
            )
        except InvalidSignature:
            raise SignatureVerificationError(f"signature value does not verify for reference {uri or '(document)'}") from None
