"""
Key material — load and validate the signing identity.

Accepts either a PEM (or DER) certificate plus a PEM private key, or a
single PKCS#12 container. The identity is immutable once loaded and is
shared read-only by every signer in the process.

Failures raise CredentialError (unreadable, wrong password, mismatched or
non-RSA key) or ExpiredCredentialError (outside the validity window).
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from sii_dte.domain import rut
from sii_dte.domain.errors import CredentialError, ExpiredCredentialError

log = structlog.get_logger()

_RUT_IN_TEXT = re.compile(r"\d{1,2}\.?\d{3}\.?\d{3}-[\dkK]")

type KeySource = bytes | Path


def _b64_int(value: int) -> str:
    return base64.b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).decode("ascii")


@dataclass(frozen=True, slots=True)
class SigningIdentity:
    """An RSA private key, its X.509 certificate and the signer's RUT."""

    certificate: x509.Certificate = field(repr=False)
    private_key: rsa.RSAPrivateKey = field(repr=False)
    signer_rut: str

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @property
    def certificate_base64(self) -> str:
        der = self.certificate.public_bytes(serialization.Encoding.DER)
        return base64.b64encode(der).decode("ascii")

    @property
    def modulus_base64(self) -> str:
        return _b64_int(self.public_key.public_numbers().n)

    @property
    def exponent_base64(self) -> str:
        return _b64_int(self.public_key.public_numbers().e)

    def is_valid_at(self, moment: datetime) -> bool:
        return self.not_before <= moment <= self.not_after


def load_identity(
    certificate_source: KeySource,
    key_source: KeySource | None = None,
    password: str | bytes | None = None,
    signer_rut: str | None = None,
) -> SigningIdentity:
    """
    Load a signing identity.

    With `key_source` omitted, `certificate_source` is read as a PKCS#12
    container; otherwise it is a PEM/DER certificate and `key_source` a
    PEM private key. `signer_rut` defaults to the RUT found in the
    certificate subject.
    """
    if key_source is None:
        return load_pkcs12(certificate_source, password, signer_rut)

    certificate = _load_certificate(_read(certificate_source, "certificate"))
    private_key = _load_private_key(_read(key_source, "private key"), _password_bytes(password))
    return _build_identity(certificate, private_key, signer_rut)


def load_pkcs12(
    container: KeySource,
    password: str | bytes | None = None,
    signer_rut: str | None = None,
) -> SigningIdentity:
    data = _read(container, "PKCS#12 container")
    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            data, _password_bytes(password)
        )
    except (ValueError, TypeError) as e:
        raise CredentialError(f"Cannot open PKCS#12 container: {e}") from e
    if private_key is None or certificate is None:
        raise CredentialError("PKCS#12 container must hold both a private key and a certificate")
    return _build_identity(certificate, private_key, signer_rut)


def validate(identity: SigningIdentity, now: datetime | None = None) -> SigningIdentity:
    """Raise ExpiredCredentialError unless `now` is within the validity window."""
    moment = now or datetime.now(UTC)
    if not identity.is_valid_at(moment):
        log.warning(
            "identity.outside_validity",
            subject=identity.subject,
            not_before=identity.not_before.isoformat(),
            not_after=identity.not_after.isoformat(),
        )
        raise ExpiredCredentialError(
            f"Certificate valid from {identity.not_before.isoformat()} "
            f"to {identity.not_after.isoformat()}, not at {moment.isoformat()}"
        )
    return identity


# ─────────────────────── Helpers ───────────────────────


def _read(source: KeySource, what: str) -> bytes:
    if isinstance(source, bytes):
        return source
    try:
        return source.read_bytes()
    except OSError as e:
        raise CredentialError(f"Cannot read {what} from {source}: {e}") from e


def _password_bytes(password: str | bytes | None) -> bytes | None:
    if password is None or isinstance(password, bytes):
        return password
    return password.encode("utf-8")


def _load_certificate(data: bytes) -> x509.Certificate:
    try:
        if b"-----BEGIN" in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise CredentialError(f"Unreadable certificate: {e}") from e


def _load_private_key(data: bytes, password: bytes | None) -> object:
    try:
        if b"-----BEGIN" in data:
            return serialization.load_pem_private_key(data, password=password)
        return serialization.load_der_private_key(data, password=password)
    except (ValueError, TypeError) as e:
        raise CredentialError(f"Unreadable private key: {e}") from e


def _build_identity(
    certificate: x509.Certificate, private_key: object, signer_rut: str | None
) -> SigningIdentity:
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise CredentialError(
            f"Signing key must be RSA, got {type(private_key).__name__}"
        )
    cert_key = certificate.public_key()
    if (
        not isinstance(cert_key, rsa.RSAPublicKey)
        or cert_key.public_numbers() != private_key.public_key().public_numbers()
    ):
        raise CredentialError("Private key does not match the certificate")

    identity = SigningIdentity(
        certificate=certificate,
        private_key=private_key,
        signer_rut=_resolve_signer_rut(certificate, signer_rut),
    )
    log.info(
        "identity.loaded",
        subject=identity.subject,
        signer_rut=identity.signer_rut,
        not_after=identity.not_after.isoformat(),
    )
    return identity


def _resolve_signer_rut(certificate: x509.Certificate, signer_rut: str | None) -> str:
    if signer_rut:
        try:
            return rut.normalize(signer_rut)
        except ValueError as e:
            raise CredentialError(str(e)) from e

    for oid in (NameOID.SERIAL_NUMBER, NameOID.COMMON_NAME):
        for attribute in certificate.subject.get_attributes_for_oid(oid):
            text = attribute.value if isinstance(attribute.value, str) else ""
            match = _RUT_IN_TEXT.search(text)
            if match and rut.is_valid(match.group()):
                return rut.normalize(match.group())
    raise CredentialError("Cannot determine the signer RUT from the certificate subject")
