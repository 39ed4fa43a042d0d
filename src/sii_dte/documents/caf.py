"""
CAF parsing — folio authorizations issued by the tax authority.

A CAF file looks like:

  <AUTORIZACION>
    <CAF version="1.0">
      <DA>
        <RE>76543210-3</RE><RS>ACME SPA</RS><TD>39</TD>
        <RNG><D>1</D><H>100</H></RNG>
        <FA>2024-01-15</FA>
        <RSAPK><M>...</M><E>...</E></RSAPK>
        <IDK>100</IDK>
      </DA>
      <FRMA algoritmo="SHA1withRSA">...</FRMA>
    </CAF>
    <RSASK>...</RSASK>
    <RSAPUBK>...</RSAPUBK>
  </AUTORIZACION>

Only the <CAF> element travels inside stamps. FRMA is the authority's
RSA-SHA1 signature over the canonical <DA> block; it is checked when an
authority public key is available.
"""

from __future__ import annotations

import base64
from datetime import date

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from sii_dte.domain import rut
from sii_dte.domain.errors import StampGenerationError
from sii_dte.domain.models import FolioAuthorization
from sii_dte.signing.canonical import canonicalize

_PARSER = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)


def parse_folio_authorization(data: bytes) -> FolioAuthorization:
    """Parse CAF XML (either <AUTORIZACION> or a bare <CAF>). Raises StampGenerationError."""
    try:
        root = etree.fromstring(data, _PARSER)
    except etree.XMLSyntaxError as e:
        raise StampGenerationError(f"Folio authorization is not XML: {e}") from e

    caf = root if etree.QName(root).localname == "CAF" else _child(root, "CAF")
    da = _child(caf, "DA")
    signature = _child(caf, "FRMA")

    try:
        return FolioAuthorization(
            emitter_rut=rut.normalize(_text(da, "RE")),
            legal_name=_text(da, "RS"),
            document_type=int(_text(da, "TD")),
            range_start=int(_text(da, "RNG/D")),
            range_end=int(_text(da, "RNG/H")),
            authorized_on=date.fromisoformat(_text(da, "FA")),
            public_key_modulus=_text(da, "RSAPK/M"),
            public_key_exponent=_text(da, "RSAPK/E"),
            key_id=int(_text(da, "IDK")),
            authority_signature="".join((signature.text or "").split()),
            signature_algorithm=signature.get("algoritmo", "SHA1withRSA"),
            raw=canonicalize(caf),
        )
    except ValueError as e:
        raise StampGenerationError(f"Malformed folio authorization: {e}") from e


def verify_authority_signature(
    authorization: FolioAuthorization, authority_key: rsa.RSAPublicKey
) -> None:
    """Check FRMA over the canonical DA block. Raises StampGenerationError."""
    caf = etree.fromstring(authorization.raw)
    da = _child(caf, "DA")
    try:
        authority_key.verify(
            base64.b64decode(authorization.authority_signature),
            canonicalize(da),
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
    except (InvalidSignature, ValueError) as e:
        raise StampGenerationError(
            f"Authority signature on CAF {authorization.document_type} "
            f"[{authorization.range_start}-{authorization.range_end}] does not verify"
        ) from e


def caf_element(authorization: FolioAuthorization, namespace: str | None = None) -> etree._Element:
    """
    The CAF as an element for embedding, content untouched.

    With `namespace`, every tag is moved into it so the CAF reads as part
    of the enclosing document.
    """
    element = etree.fromstring(authorization.raw)
    if namespace is None:
        return element
    return _adopt(element, namespace)


def _adopt(
    source: etree._Element, namespace: str, parent: etree._Element | None = None
) -> etree._Element:
    tag = f"{{{namespace}}}{etree.QName(source).localname}"
    if parent is None:
        node = etree.Element(tag, nsmap={None: namespace})
    else:
        node = etree.SubElement(parent, tag)
        node.tail = source.tail
    node.attrib.update(source.attrib)
    node.text = source.text
    for child in source.iterchildren(tag=etree.Element):
        _adopt(child, namespace, node)
    return node


def _child(parent: etree._Element, tag: str) -> etree._Element:
    node = parent.find(tag)
    if node is None:
        raise StampGenerationError(f"Malformed folio authorization: missing <{tag}>")
    return node


def _text(parent: etree._Element, path: str) -> str:
    node = parent.find(path)
    if node is None or node.text is None or not node.text.strip():
        raise StampGenerationError(f"Malformed folio authorization: missing <{path}>")
    return node.text.strip()
