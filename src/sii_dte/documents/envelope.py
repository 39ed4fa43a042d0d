"""
Envelope assembler — stamp, sign and batch documents for submission.

  BusinessDocument ──lookup CAF──→ stamp (TED) ──render──→ <DTE>
        ──sign Documento──→ TaxDocument ──with_document──→ Envelope
        ──sign SetDTE──→ signed Envelope ──to_xml──→ text

  EnvioDTE | EnvioBOLETA version="1.0"
   ├── SetDTE ID="SetDoc"
   │    ├── Caratula   RutEmisor, RutEnvia, RutReceptor, FchResol,
   │    │              NroResol, TmstFirmaEnv, SubTotDTE*
   │    └── DTE*       each already signed
   └── Signature       over SetDTE

Order is fixed: a document's stamp exists before its signature, every
document signature exists before the envelope signature. Envelopes are
immutable; each step returns a new value.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import date, datetime

import structlog
from lxml import etree

from sii_dte.documents.dte import render_document
from sii_dte.documents.stamp import TIMESTAMP_FORMAT, StampGenerator
from sii_dte.documents.xml import E, to_text
from sii_dte.domain import rut
from sii_dte.domain.errors import HeterogeneousBatchError, InvalidDocumentError
from sii_dte.domain.models import (
    BusinessDocument,
    Caratula,
    DigestAlgorithm,
    Envelope,
    TaxDocument,
)
from sii_dte.domain.ports import FolioAuthorizationSource
from sii_dte.signing.canonical import canonicalize
from sii_dte.signing.engine import SignatureEngine, render_signature
from sii_dte.signing.keys import SigningIdentity

log = structlog.get_logger()

AUTHORITY_RUT = "60803000-K"


def _local_now() -> datetime:
    return datetime.now().replace(microsecond=0)


def render_envelope(envelope: Envelope) -> etree._Element:
    """Build the envelope element, with its signature when it has one."""
    caratula = envelope.caratula
    set_dte = E.SetDTE(
        E.Caratula(
            E.RutEmisor(caratula.emitter_rut),
            E.RutEnvia(caratula.sender_rut),
            E.RutReceptor(caratula.receiver_rut),
            E.FchResol(caratula.resolution_date.isoformat()),
            E.NroResol(str(caratula.resolution_number)),
            E.TmstFirmaEnv(caratula.signed_at.strftime(TIMESTAMP_FORMAT)),
            *[
                E.SubTotDTE(E.TpoDTE(str(int(document_type))), E.NroDTE(str(count)))
                for document_type, count in envelope.subtotals
            ],
            version="1.0",
        ),
        *[etree.fromstring(document.xml) for document in envelope.documents],
        ID=envelope.set_id,
    )
    root_tag = "EnvioBOLETA" if envelope.is_receipt_batch else "EnvioDTE"
    root = getattr(E, root_tag)(set_dte, version=envelope.version)
    if envelope.signature is not None:
        root.append(render_signature(envelope.signature))
    return root


class EnvelopeAssembler:
    """
    Build signed envelopes for one emitter's documents.

    Holds a read-only identity and a CAF source; safe to share between
    threads, since every call works on its own values.
    """

    def __init__(
        self,
        identity: SigningIdentity,
        engine: SignatureEngine,
        stamp_generator: StampGenerator,
        authorizations: FolioAuthorizationSource,
        authority_rut: str = AUTHORITY_RUT,
        digest_algorithm: DigestAlgorithm | None = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._identity = identity
        self._engine = engine
        self._stamps = stamp_generator
        self._authorizations = authorizations
        self._authority_rut = rut.normalize(authority_rut)
        self._digest_algorithm = digest_algorithm or engine.digest_algorithm
        self._clock = clock

    def assemble_single(
        self,
        document: BusinessDocument,
        resolution_date: date,
        resolution_number: int,
    ) -> Envelope:
        return self.assemble_batch([document], resolution_date, resolution_number)

    def assemble_batch(
        self,
        documents: Sequence[BusinessDocument],
        resolution_date: date,
        resolution_number: int,
    ) -> Envelope:
        """
        Stamp, sign and wrap `documents` in one signed envelope.

        Raises before any signing happens: InvalidDocumentError when a
        document carries a bad RUT, lacks a required receiver or lacks the
        reference a note needs; HeterogeneousBatchError when the batch is
        empty, repeats a folio, or mixes document types, emitters or (for
        non-receipt types) receivers.
        """
        receiver_rut = self._check_batch(documents)
        first = documents[0]

        envelope = Envelope(
            caratula=Caratula(
                emitter_rut=rut.normalize(first.emitter.rut),
                sender_rut=self._identity.signer_rut,
                receiver_rut=receiver_rut,
                resolution_date=resolution_date,
                resolution_number=resolution_number,
                signed_at=self._clock(),
            )
        )
        for document in documents:
            envelope = envelope.with_document(self.build_document(document))
        envelope = self.sign_envelope(envelope)

        log.info(
            "envelope.assembled",
            document_type=int(first.document_type),
            documents=len(envelope.documents),
            emitter=envelope.caratula.emitter_rut,
        )
        return envelope

    def build_document(self, document: BusinessDocument) -> TaxDocument:
        """Stamp, render and sign one document."""
        authorization = self._authorizations.lookup(
            document.emitter.rut, document.document_type, document.folio
        )
        stamp = self._stamps.generate_stamp(document, authorization, self._identity)
        dte = render_document(document, stamp, self._clock())
        signature = self._engine.attach(
            dte, document.reference_id, self._identity, self._digest_algorithm
        )
        return TaxDocument(
            reference_id=document.reference_id,
            document_type=document.document_type,
            folio=document.folio,
            emitter_rut=rut.normalize(document.emitter.rut),
            receiver_rut=stamp.receiver_rut,
            stamp=stamp,
            signature=signature,
            xml=etree.tostring(dte, encoding="UTF-8"),
        )

    def sign_envelope(self, envelope: Envelope) -> Envelope:
        """Sign the SetDTE block. An already signed envelope is returned as is."""
        if envelope.is_signed:
            return envelope
        set_dte = render_envelope(envelope)[0]
        block = self._engine.sign(
            canonicalize(set_dte), envelope.set_id, self._identity, self._digest_algorithm
        )
        return envelope.with_signature(block)

    def to_xml(self, envelope: Envelope) -> str:
        """Serialize with an XML declaration, signing first if needed."""
        return to_text(render_envelope(self.sign_envelope(envelope)))

    def _check_batch(self, documents: Sequence[BusinessDocument]) -> str:
        if not documents:
            raise HeterogeneousBatchError("An envelope needs at least one document")
        for document in documents:
            _check_document(document)
        first = documents[0]
        emitter = rut.normalize(first.emitter.rut)
        for document in documents[1:]:
            if document.document_type != first.document_type:
                raise HeterogeneousBatchError(
                    f"Mixed document types {int(first.document_type)} and {int(document.document_type)}"
                )
            if rut.normalize(document.emitter.rut) != emitter:
                raise HeterogeneousBatchError(
                    f"Mixed emitters {emitter} and {rut.normalize(document.emitter.rut)}"
                )
        reference_ids = [d.reference_id for d in documents]
        repeated = sorted({r for r in reference_ids if reference_ids.count(r) > 1})
        if repeated:
            raise HeterogeneousBatchError(f"Repeated documents in one envelope: {', '.join(repeated)}")

        if first.document_type.is_receipt:
            return self._authority_rut
        receivers = {rut.normalize(d.receiver.rut) if d.receiver else None for d in documents}
        if len(receivers) != 1 or None in receivers:
            raise HeterogeneousBatchError(
                "Documents in one envelope must share a single receiver"
            )
        return receivers.pop()


def _check_document(document: BusinessDocument) -> None:
    rut.require_valid(document.emitter.rut)
    if document.receiver is not None:
        rut.require_valid(document.receiver.rut)
    elif not document.document_type.is_receipt:
        raise InvalidDocumentError(
            f"{document.reference_id}: document type {int(document.document_type)} requires a receiver"
        )
    if document.document_type.requires_reference and not document.references:
        raise InvalidDocumentError(
            f"{document.reference_id}: notes must reference the document they amend"
        )
