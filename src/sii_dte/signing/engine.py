"""
Signature engine — XML-DSIG enveloped signatures over canonical XML.

One engine, two targets (SigningMode):

  DOCUMENT  digest = H(c14n(referenced element))
            SignedInfo{c14n, rsa-H, Reference URI="#id", H, digest}
            value  = RSA-PKCS1v15-H(c14n(SignedInfo))

  RAW       digest = H(payload)
            value  = RSA-PKCS1v15-H(payload)
            (authority seed, stamp data block)

Rendered blocks carry KeyInfo with the RSA key value and the X.509
certificate, so verification needs nothing but the signed document.

Signing checks the identity validity window first; verification raises
VerificationError with a cause instead of returning False.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from sii_dte.domain.errors import SigningError, VerificationCause, VerificationError
from sii_dte.domain.models import DigestAlgorithm, SignatureBlock, SigningMode
from sii_dte.signing.canonical import C14N_URI, canonicalize, digest_base64, hash_algorithm
from sii_dte.signing.keys import SigningIdentity, validate

log = structlog.get_logger()

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
ENVELOPED_TRANSFORM_URI = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ─────────────────────── Rendering ───────────────────────


def _signature_skeleton(
    reference_uri: str,
    algorithm: DigestAlgorithm,
    digest_value: str,
    enveloped: bool,
) -> tuple[etree._Element, etree._Element]:
    signature = etree.Element(_ds("Signature"), nsmap={None: DS_NS})
    signed_info = etree.SubElement(signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=C14N_URI)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=algorithm.signature_uri)
    reference = etree.SubElement(signed_info, _ds("Reference"), URI=reference_uri)
    if enveloped:
        transforms = etree.SubElement(reference, _ds("Transforms"))
        etree.SubElement(transforms, _ds("Transform"), Algorithm=ENVELOPED_TRANSFORM_URI)
    etree.SubElement(reference, _ds("DigestMethod"), Algorithm=algorithm.digest_uri)
    etree.SubElement(reference, _ds("DigestValue")).text = digest_value
    return signature, signed_info


def render_signature(block: SignatureBlock) -> etree._Element:
    """Build the <Signature> element for a block. Pure: same block, same bytes."""
    signature, _ = _signature_skeleton(
        block.reference_uri, block.digest_algorithm, block.digest_value, block.enveloped
    )
    etree.SubElement(signature, _ds("SignatureValue")).text = block.signature_value
    key_info = etree.SubElement(signature, _ds("KeyInfo"))
    key_value = etree.SubElement(etree.SubElement(key_info, _ds("KeyValue")), _ds("RSAKeyValue"))
    etree.SubElement(key_value, _ds("Modulus")).text = block.modulus
    etree.SubElement(key_value, _ds("Exponent")).text = block.exponent
    x509_data = etree.SubElement(key_info, _ds("X509Data"))
    etree.SubElement(x509_data, _ds("X509Certificate")).text = block.certificate
    return signature


def parse_signature(signature: etree._Element) -> SignatureBlock:
    """Read a rendered <Signature> element back into a SignatureBlock."""

    def text(path: str) -> str:
        node = signature.find(path)
        if node is None or not (node.text or "").strip():
            raise VerificationError(
                VerificationCause.MISSING_SIGNATURE, f"signature lacks {path.split('}')[-1]}"
            )
        return "".join(node.text.split())

    reference = signature.find(f"{_ds('SignedInfo')}/{_ds('Reference')}")
    digest_method = signature.find(f"{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestMethod')}")
    if reference is None or digest_method is None:
        raise VerificationError(VerificationCause.MISSING_SIGNATURE, "signature lacks Reference")
    try:
        algorithm = DigestAlgorithm.from_digest_uri(digest_method.get("Algorithm", ""))
    except ValueError as e:
        raise VerificationError(VerificationCause.SIGNATURE_INVALID, str(e)) from e

    return SignatureBlock(
        reference_uri=reference.get("URI", ""),
        digest_algorithm=algorithm,
        digest_value=text(f"{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestValue')}"),
        signature_value=text(_ds("SignatureValue")),
        certificate=text(f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}"),
        modulus=text(f".//{_ds('Modulus')}"),
        exponent=text(f".//{_ds('Exponent')}"),
        enveloped=reference.find(f"{_ds('Transforms')}/{_ds('Transform')}") is not None,
    )


def _find_by_id(root: etree._Element, element_id: str) -> etree._Element | None:
    if root.get("ID") == element_id:
        return root
    matches = root.xpath(".//*[@ID=$id]", id=element_id)
    return matches[0] if matches else None


# ─────────────────────── Engine ───────────────────────


class SignatureEngine:
    """
    Produce and verify SignatureBlocks.

    Stateless apart from its defaults: safe to share between threads as
    long as the identity is immutable.
    """

    def __init__(
        self,
        digest_algorithm: DigestAlgorithm = DigestAlgorithm.SHA1,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._digest_algorithm = digest_algorithm
        self._clock = clock

    @property
    def digest_algorithm(self) -> DigestAlgorithm:
        return self._digest_algorithm

    def sign(
        self,
        payload: bytes,
        reference_id: str | None,
        identity: SigningIdentity,
        digest_algorithm: DigestAlgorithm | None = None,
        mode: SigningMode = SigningMode.DOCUMENT,
        enveloped: bool = False,
    ) -> SignatureBlock:
        """
        Sign `payload` (canonical bytes in DOCUMENT mode) for `reference_id`.

        Raises ExpiredCredentialError outside the certificate validity
        window and SigningError if the primitive fails.
        """
        algorithm = digest_algorithm or self._digest_algorithm
        validate(identity, self._clock())

        reference_uri = f"#{reference_id}" if reference_id else ""
        digest_value = digest_base64(payload, algorithm)
        if mode is SigningMode.DOCUMENT:
            _, signed_info = _signature_skeleton(reference_uri, algorithm, digest_value, enveloped)
            signed_bytes = canonicalize(signed_info)
        else:
            signed_bytes = payload

        signature_value = self._rsa_sign(identity, signed_bytes, algorithm)
        log.debug(
            "signature.created",
            reference=reference_uri or "<document>",
            mode=mode.value,
            algorithm=algorithm.value,
        )
        return SignatureBlock(
            reference_uri=reference_uri,
            digest_algorithm=algorithm,
            digest_value=digest_value,
            signature_value=signature_value,
            certificate=identity.certificate_base64,
            modulus=identity.modulus_base64,
            exponent=identity.exponent_base64,
            mode=mode,
            enveloped=enveloped,
        )

    def attach(
        self,
        container: etree._Element,
        reference_id: str | None,
        identity: SigningIdentity,
        digest_algorithm: DigestAlgorithm | None = None,
    ) -> SignatureBlock:
        """
        Sign an element of `container` and append the <Signature> to it.

        With a `reference_id`, the element carrying that ID is signed and
        the signature becomes its sibling-level trailer in `container`.
        Without one, `container` itself is signed as an enveloped
        signature (Reference URI="").
        """
        if reference_id is None:
            target = container
        else:
            target = _find_by_id(container, reference_id)
            if target is None:
                raise SigningError(f"No element with ID {reference_id!r} to sign")
        block = self.sign(
            canonicalize(target),
            reference_id,
            identity,
            digest_algorithm,
            enveloped=target is container,
        )
        container.append(render_signature(block))
        return block

    def verify(
        self,
        signed: etree._Element | bytes | str,
        signature: etree._Element | None = None,
        public_key: rsa.RSAPublicKey | None = None,
    ) -> bool:
        """
        Verify a DOCUMENT-mode signature; returns True or raises VerificationError.

        `signature` defaults to the <Signature> child of the document root.
        `public_key` defaults to the certificate embedded in the block.
        """
        root = self._as_element(signed)
        if signature is None:
            signature = root.find(_ds("Signature"))
        if signature is None:
            raise VerificationError(VerificationCause.MISSING_SIGNATURE, "no Signature element")

        block = parse_signature(signature)
        document_root = signature.getroottree().getroot()
        if block.reference_uri:
            target = _find_by_id(document_root, block.reference_uri.lstrip("#"))
            if target is None:
                raise VerificationError(
                    VerificationCause.MISSING_SIGNATURE,
                    f"referenced element {block.reference_uri} not found",
                )
        else:
            target = document_root

        canonical = self._canonical_without(target, signature)
        if digest_base64(canonical, block.digest_algorithm) != block.digest_value:
            raise VerificationError(
                VerificationCause.DIGEST_MISMATCH,
                f"content of {block.reference_uri or 'document'} changed after signing",
            )

        signed_info = signature.find(_ds("SignedInfo"))
        self.verify_signature_value(
            public_key or self._certificate_key(block),
            block.signature_value,
            canonicalize(signed_info),
            block.digest_algorithm,
        )
        return True

    def verify_raw(
        self,
        payload: bytes,
        block: SignatureBlock,
        public_key: rsa.RSAPublicKey | None = None,
    ) -> bool:
        """Verify a RAW-mode block against the payload it claims to cover."""
        if digest_base64(payload, block.digest_algorithm) != block.digest_value:
            raise VerificationError(VerificationCause.DIGEST_MISMATCH, "payload changed after signing")
        self.verify_signature_value(
            public_key or self._certificate_key(block),
            block.signature_value,
            payload,
            block.digest_algorithm,
        )
        return True

    # ─────────────────────── Internals ───────────────────────

    @staticmethod
    def _as_element(signed: etree._Element | bytes | str) -> etree._Element:
        if isinstance(signed, etree._Element):
            return signed
        data = signed.encode("utf-8") if isinstance(signed, str) else signed
        try:
            return etree.fromstring(data)
        except etree.XMLSyntaxError as e:
            raise VerificationError(VerificationCause.MISSING_SIGNATURE, f"not XML: {e}") from e

    @staticmethod
    def _canonical_without(target: etree._Element, signature: etree._Element) -> bytes:
        """Canonical bytes of `target` with an enveloped `signature` taken out."""
        if not any(ancestor is target for ancestor in signature.iterancestors()):
            return canonicalize(target)
        parent = signature.getparent()
        index = parent.index(signature)
        parent.remove(signature)
        try:
            return canonicalize(target)
        finally:
            parent.insert(index, signature)

    @staticmethod
    def _certificate_key(block: SignatureBlock) -> rsa.RSAPublicKey:
        try:
            certificate = x509.load_der_x509_certificate(base64.b64decode(block.certificate))
        except ValueError as e:
            raise VerificationError(
                VerificationCause.MISSING_SIGNATURE, f"unreadable embedded certificate: {e}"
            ) from e
        key = certificate.public_key()
        if not isinstance(key, rsa.RSAPublicKey):
            raise VerificationError(VerificationCause.SIGNATURE_INVALID, "certificate key is not RSA")
        return key

    @staticmethod
    def _rsa_sign(identity: SigningIdentity, data: bytes, algorithm: DigestAlgorithm) -> str:
        if not isinstance(identity.private_key, rsa.RSAPrivateKey):
            raise SigningError(f"{algorithm.stamp_label} requires an RSA key")
        try:
            raw = identity.private_key.sign(data, padding.PKCS1v15(), hash_algorithm(algorithm))
        except (ValueError, TypeError) as e:
            raise SigningError(f"RSA signing failed: {e}") from e
        return base64.b64encode(raw).decode("ascii")

    @staticmethod
    def verify_signature_value(
        public_key: rsa.RSAPublicKey,
        signature_value: str,
        data: bytes,
        algorithm: DigestAlgorithm,
    ) -> bool:
        try:
            public_key.verify(
                base64.b64decode(signature_value), data, padding.PKCS1v15(), hash_algorithm(algorithm)
            )
        except (InvalidSignature, ValueError) as e:
            raise VerificationError(
                VerificationCause.SIGNATURE_INVALID, "signature value does not match"
            ) from e
        return True
