"""
Signing credentials -- a tenant's certificate, private key and chain.

The private key object lives only in the caller's memory for the duration
of the calls that need it.  Nothing in this module persists or logs it,
and ``repr()`` never shows it.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from dte_kernel.exceptions import CertificateInvalidError


@dataclass(frozen=True)
class SigningCredentials:
    """
    Credentials scoped to exactly one tenant.

    chain holds intermediate (and optionally root) certificates, leaf first
    excluded; it is attached to every signature so the receiver can verify
    without a separate lookup.
    """

    tenant_id: str
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey = field(repr=False)
    chain: tuple[x509.Certificate, ...] = ()
    # RUT of the certificate holder (RutEnvia); defaults to the issuer
    sender_rut: str | None = None

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


def load_pkcs12(
    tenant_id: str,
    data: bytes,
    password: str | bytes | None,
    sender_rut: str | None = None,
) -> SigningCredentials:
    """
    Load credentials from a PKCS#12 (.p12 / .pfx) bundle.

    Raises:
        CertificateInvalidError: If the bundle cannot be opened or holds no
            RSA key and certificate.
    """
    secret = password.encode("utf-8") if isinstance(password, str) else password
    try:
        key, cert, extra = pkcs12.load_key_and_certificates(data, secret)
    except ValueError as exc:
        # Never echo the password or the library message.
        raise CertificateInvalidError("unreadable", detail="PKCS#12 bundle could not be opened") from exc
    if cert is None or not isinstance(key, rsa.RSAPrivateKey):
        raise CertificateInvalidError("unreadable", detail="PKCS#12 bundle has no RSA key and certificate")
    return SigningCredentials(
        tenant_id=tenant_id,
        certificate=cert,
        private_key=key,
        chain=tuple(extra or ()),
        sender_rut=sender_rut,
    )
