"""
Canonicalizer — C14N 1.0 (inclusive, without comments) and digests.

The same function produces the bytes that get digested at signing time
and at verification time, so a signature can only verify if nothing in
the referenced subtree changed.
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.hazmat.primitives import hashes
from lxml import etree

from sii_dte.domain.models import DigestAlgorithm

C14N_URI = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"


def canonicalize(node: etree._Element | bytes) -> bytes:
    """
    Canonical bytes of an element (with its in-scope namespaces) or of a
    serialized XML document.

    Raises lxml.etree.XMLSyntaxError when given bytes that are not XML.
    """
    if isinstance(node, bytes):
        node = etree.fromstring(node)
    return etree.tostring(node, method="c14n", exclusive=False, with_comments=False)


def digest(data: bytes, algorithm: DigestAlgorithm = DigestAlgorithm.SHA1) -> bytes:
    return hashlib.new(algorithm.value, data).digest()


def digest_base64(data: bytes, algorithm: DigestAlgorithm = DigestAlgorithm.SHA1) -> str:
    return base64.b64encode(digest(data, algorithm)).decode("ascii")


def hash_algorithm(algorithm: DigestAlgorithm) -> hashes.HashAlgorithm:
    """The cryptography hash object used for RSA PKCS#1 v1.5 with `algorithm`."""
    if algorithm is DigestAlgorithm.SHA256:
        return hashes.SHA256()
    return hashes.SHA1()
