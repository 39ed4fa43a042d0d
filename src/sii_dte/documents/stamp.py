"""
TED generator — the electronic stamp printed on every tax document.

  TED
   ├── DD     RE, TD, F, FE, RR, RSR, MNT, IT1, CAF (verbatim), TSTED
   └── FRMT   RSA signature over the canonical DD bytes

The stamp is signed with the signing identity's key in RAW mode, before
and independently of the document-level XML-DSIG signature.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog
from cryptography.hazmat.primitives.asymmetric import rsa
from lxml import etree

from sii_dte.documents.caf import caf_element
from sii_dte.documents.xml import SII_NS, E, sii
from sii_dte.domain import rut
from sii_dte.domain.errors import StampGenerationError, VerificationCause, VerificationError
from sii_dte.domain.models import (
    BusinessDocument,
    DigestAlgorithm,
    DocumentStamp,
    FolioAuthorization,
    SigningMode,
)
from sii_dte.signing.canonical import canonicalize
from sii_dte.signing.engine import SignatureEngine
from sii_dte.signing.keys import SigningIdentity

log = structlog.get_logger()

GENERIC_RECEIVER_RUT = "66666666-6"
GENERIC_RECEIVER_NAME = "Consumidor Final"
FIRST_ITEM_MAX_LENGTH = 40
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _local_now() -> datetime:
    return datetime.now().replace(microsecond=0)


class StampGenerator:
    def __init__(
        self,
        engine: SignatureEngine,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._engine = engine
        self._clock = clock

    def generate_stamp(
        self,
        document: BusinessDocument,
        authorization: FolioAuthorization,
        identity: SigningIdentity,
    ) -> DocumentStamp:
        """
        Build and sign the stamp for `document` under `authorization`.

        Raises StampGenerationError when the CAF is for another type or
        emitter, or when the folio lies outside its range.
        """
        self._check_authorization(document, authorization)

        receiver = document.receiver
        receiver_rut = rut.normalize(receiver.rut) if receiver else GENERIC_RECEIVER_RUT
        receiver_name = receiver.name if receiver else GENERIC_RECEIVER_NAME
        first_item = document.items[0].description[:FIRST_ITEM_MAX_LENGTH] if document.items else ""
        timestamp = self._clock()
        total = document.totals.total

        dd = E.DD(
            E.RE(rut.strip_hyphen(document.emitter.rut)),
            E.TD(str(int(document.document_type))),
            E.F(str(document.folio)),
            E.FE(document.emission_date.isoformat()),
            E.RR(rut.strip_hyphen(receiver_rut)),
            E.RSR(receiver_name),
            E.MNT(str(total)),
            E.IT1(first_item),
            caf_element(authorization, SII_NS),
            E.TSTED(timestamp.strftime(TIMESTAMP_FORMAT)),
        )
        dd_bytes = canonicalize(dd)
        block = self._engine.sign(dd_bytes, None, identity, mode=SigningMode.RAW)

        log.debug(
            "stamp.generated",
            document_type=int(document.document_type),
            folio=document.folio,
            total=total,
        )
        return DocumentStamp(
            emitter_rut=rut.normalize(document.emitter.rut),
            document_type=int(document.document_type),
            folio=document.folio,
            emission_date=document.emission_date,
            receiver_rut=receiver_rut,
            receiver_name=receiver_name,
            total_amount=total,
            first_item=first_item,
            caf=authorization,
            timestamp=timestamp,
            algorithm=block.digest_algorithm.stamp_label,
            signature_value=block.signature_value,
            dd=dd_bytes,
        )

    @staticmethod
    def _check_authorization(document: BusinessDocument, authorization: FolioAuthorization) -> None:
        if authorization.document_type != int(document.document_type):
            raise StampGenerationError(
                f"CAF authorizes type {authorization.document_type}, "
                f"document is type {int(document.document_type)}"
            )
        if rut.normalize(authorization.emitter_rut) != rut.normalize(document.emitter.rut):
            raise StampGenerationError(
                f"CAF belongs to {authorization.emitter_rut}, document emitter is {document.emitter.rut}"
            )
        if not authorization.covers(document.folio):
            raise StampGenerationError(
                f"Folio {document.folio} outside authorized range "
                f"[{authorization.range_start}, {authorization.range_end}]"
            )


def render_stamp(stamp: DocumentStamp) -> etree._Element:
    return E.TED(
        etree.fromstring(stamp.dd),
        E.FRMT(stamp.signature_value, algoritmo=stamp.algorithm),
        version="1.0",
    )


def verify_stamp(stamp: DocumentStamp | etree._Element, public_key: rsa.RSAPublicKey) -> bool:
    """
    Check a stamp's FRMT against `public_key`.

    Accepts the DocumentStamp value or a rendered <TED> element (for
    instance one found inside a parsed document).
    """
    if isinstance(stamp, DocumentStamp):
        dd_bytes, signature_value, label = stamp.dd, stamp.signature_value, stamp.algorithm
    else:
        dd = stamp.find(sii("DD"))
        frmt = stamp.find(sii("FRMT"))
        if dd is None or frmt is None or not frmt.text:
            raise VerificationError(VerificationCause.MISSING_SIGNATURE, "stamp lacks DD or FRMT")
        dd_bytes, signature_value = canonicalize(dd), frmt.text.strip()
        label = frmt.get("algoritmo", DigestAlgorithm.SHA1.stamp_label)

    algorithm = DigestAlgorithm.SHA256 if label.startswith("SHA256") else DigestAlgorithm.SHA1
    return SignatureEngine.verify_signature_value(public_key, signature_value, dd_bytes, algorithm)
