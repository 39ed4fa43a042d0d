"""
Domain models — immutable values for tax documents, stamps and envelopes.

These are pure value objects with no I/O. XML rendering lives in the
documents package, cryptography in the signing package; everything here
can be built and compared in tests without either.

All models are frozen dataclasses. Envelopes change only by producing a
new value (with_document, with_signature), so a signed envelope can
never drift from the bytes its signature covers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum, IntEnum, unique

TAX_RATE = 19
"""Chilean VAT (IVA) percentage."""

DEFAULT_ENVELOPE_ID = "SetDoc"


def _round(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# ─────────────────────── Document Content ───────────────────────


@unique
class DocumentType(IntEnum):
    """Tax document type codes assigned by the authority."""

    INVOICE = 33
    EXEMPT_INVOICE = 34
    RECEIPT = 39
    EXEMPT_RECEIPT = 41
    DISPATCH_GUIDE = 52
    DEBIT_NOTE = 56
    CREDIT_NOTE = 61

    @property
    def is_receipt(self) -> bool:
        """Receipts (boletas) price items tax-included and use a generic receiver."""
        return self in (DocumentType.RECEIPT, DocumentType.EXEMPT_RECEIPT)

    @property
    def requires_reference(self) -> bool:
        """Debit and credit notes must name the document they amend."""
        return self in (DocumentType.DEBIT_NOTE, DocumentType.CREDIT_NOTE)


@unique
class ReferenceCode(IntEnum):
    """What a note does to the document it references (CodRef)."""

    CANCELS = 1
    CORRECTS_TEXT = 2
    CORRECTS_AMOUNTS = 3


@dataclass(frozen=True, slots=True)
class Party:
    """Emitter or receiver of a document. Only `rut` and `name` are mandatory."""

    rut: str
    name: str
    business_line: str | None = None
    activity_code: int | None = None
    address: str | None = None
    commune: str | None = None
    city: str | None = None


@dataclass(frozen=True, slots=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    product_code: str | None = None
    discount_amount: int = 0
    exempt: bool = False

    @property
    def amount(self) -> int:
        return _round(self.quantity * self.unit_price) - self.discount_amount


@dataclass(frozen=True, slots=True)
class Totals:
    net: int
    exempt: int
    tax_rate: int
    tax: int
    total: int


@dataclass(frozen=True, slots=True)
class Reference:
    """
    Another document this one refers to (Referencia).

    `document_type` is kept as text: besides type codes the authority
    accepts markers such as "SET" for certification test sets and
    purchase-order codes.
    """

    line_number: int
    document_type: str
    folio: str
    emission_date: date
    reason: str | None = None
    code: ReferenceCode | None = None


@dataclass(frozen=True, slots=True)
class BusinessDocument:
    """
    A document as the business supplies it, before stamping and signing.

    `receiver` may be None for receipt-type documents; the stamp then uses
    the generic final-consumer placeholder.
    """

    document_type: DocumentType
    folio: int
    emission_date: date
    emitter: Party
    items: tuple[LineItem, ...]
    receiver: Party | None = None
    due_date: date | None = None
    references: tuple[Reference, ...] = ()

    @property
    def reference_id(self) -> str:
        return f"F{self.folio}T{int(self.document_type)}"

    @property
    def totals(self) -> Totals:
        """
        Compute net, exempt, tax and grand total from the line items.

        Receipts carry tax-included prices, so the net amount is derived
        from the gross; every other type carries net prices and tax is
        added on top.
        """
        affected = sum((i.amount for i in self.items if not i.exempt), 0)
        exempt = sum((i.amount for i in self.items if i.exempt), 0)
        if self.document_type.is_receipt:
            net = _round(Decimal(affected) * 100 / (100 + TAX_RATE))
            tax = affected - net
        else:
            net = affected
            tax = _round(Decimal(net) * TAX_RATE / 100)
        return Totals(net=net, exempt=exempt, tax_rate=TAX_RATE, tax=tax, total=net + tax + exempt)


# ─────────────────────── Authorization & Signatures ───────────────────────


@dataclass(frozen=True, slots=True)
class FolioAuthorization:
    """
    An authority-issued CAF: the folio range an emitter may use for one
    document type, with the authority's signature over it.

    `raw` holds the canonical bytes of the CAF element so it can be
    embedded verbatim in every stamp.
    """

    emitter_rut: str
    legal_name: str
    document_type: int
    range_start: int
    range_end: int
    authorized_on: date
    public_key_modulus: str
    public_key_exponent: str
    key_id: int
    authority_signature: str
    signature_algorithm: str
    raw: bytes = field(repr=False)

    def covers(self, folio: int) -> bool:
        return self.range_start <= folio <= self.range_end


@unique
class DigestAlgorithm(Enum):
    SHA1 = "sha1"
    SHA256 = "sha256"

    @property
    def digest_uri(self) -> str:
        return _DIGEST_URIS[self]

    @property
    def signature_uri(self) -> str:
        return _SIGNATURE_URIS[self]

    @property
    def stamp_label(self) -> str:
        """Algorithm name written on stamp signatures, e.g. SHA1withRSA."""
        return f"{self.name}withRSA"

    @classmethod
    def from_digest_uri(cls, uri: str) -> DigestAlgorithm:
        for algorithm, known in _DIGEST_URIS.items():
            if known == uri:
                return algorithm
        raise ValueError(f"Unsupported digest method: {uri}")


_DIGEST_URIS = {
    DigestAlgorithm.SHA1: "http://www.w3.org/2000/09/xmldsig#sha1",
    DigestAlgorithm.SHA256: "http://www.w3.org/2001/04/xmlenc#sha256",
}
_SIGNATURE_URIS = {
    DigestAlgorithm.SHA1: "http://www.w3.org/2000/09/xmldsig#rsa-sha1",
    DigestAlgorithm.SHA256: "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256",
}


@unique
class SigningMode(Enum):
    """What a signature value is computed over."""

    DOCUMENT = "document"
    """Canonical SignedInfo referencing a canonicalized XML element."""

    RAW = "raw"
    """The payload bytes themselves (authority seed, stamp data)."""


@dataclass(frozen=True, slots=True)
class SignatureBlock:
    """
    A standard enveloped XML-DSIG signature, as values.

    `reference_uri` is "#<id>" for a referenced element or "" for the whole
    document. Values are base64 text exactly as rendered.
    """

    reference_uri: str
    digest_algorithm: DigestAlgorithm
    digest_value: str
    signature_value: str
    certificate: str = field(repr=False)
    modulus: str = field(repr=False)
    exponent: str
    mode: SigningMode = SigningMode.DOCUMENT
    enveloped: bool = False


@dataclass(frozen=True, slots=True)
class DocumentStamp:
    """
    Electronic stamp (TED) binding a folio and its key data to a CAF.

    `dd` keeps the exact serialized data block the signature covers.
    """

    emitter_rut: str
    document_type: int
    folio: int
    emission_date: date
    receiver_rut: str
    receiver_name: str
    total_amount: int
    first_item: str
    caf: FolioAuthorization
    timestamp: datetime
    algorithm: str
    signature_value: str
    dd: bytes = field(repr=False)


@dataclass(frozen=True, slots=True)
class TaxDocument:
    """A stamped and signed document, ready for an envelope."""

    reference_id: str
    document_type: DocumentType
    folio: int
    emitter_rut: str
    receiver_rut: str
    stamp: DocumentStamp
    signature: SignatureBlock
    xml: bytes = field(repr=False)


# ─────────────────────── Envelope ───────────────────────


@dataclass(frozen=True, slots=True)
class Caratula:
    """Envelope cover: who sends what to whom under which resolution."""

    emitter_rut: str
    sender_rut: str
    receiver_rut: str
    resolution_date: date
    resolution_number: int
    signed_at: datetime


@dataclass(frozen=True, slots=True)
class Envelope:
    """
    A batch of signed documents plus cover, optionally signed as a whole.

    Subtotals are derived from `documents`, so they always match the
    actual per-type counts.
    """

    caratula: Caratula
    documents: tuple[TaxDocument, ...] = ()
    set_id: str = DEFAULT_ENVELOPE_ID
    version: str = "1.0"
    signature: SignatureBlock | None = None

    @property
    def is_signed(self) -> bool:
        return self.signature is not None

    @property
    def is_receipt_batch(self) -> bool:
        return bool(self.documents) and self.documents[0].document_type.is_receipt

    @property
    def subtotals(self) -> tuple[tuple[DocumentType, int], ...]:
        counts: dict[DocumentType, int] = {}
        for document in self.documents:
            counts[document.document_type] = counts.get(document.document_type, 0) + 1
        return tuple(counts.items())

    def with_document(self, document: TaxDocument) -> Envelope:
        """New unsigned envelope with `document` appended."""
        return replace(self, documents=(*self.documents, document), signature=None)

    def with_signature(self, signature: SignatureBlock) -> Envelope:
        return replace(self, signature=signature)


# ─────────────────────── Authority Protocol ───────────────────────


@unique
class ProtocolStage(Enum):
    """Stages of one authority session, in the only order they may happen."""

    IDLE = "idle"
    SEED_REQUESTED = "seed_requested"
    SEED_SIGNED = "seed_signed"
    TOKEN_ACQUIRED = "token_acquired"
    SUBMITTED = "submitted"
    TRACKED = "tracked"


FINAL_UPLOAD_STATUSES = frozenset({"EPR", "RCH", "RCT", "RFR", "RSC", "RCS"})


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    track_id: str
    status: str
    message: str = ""


@dataclass(frozen=True, slots=True)
class StatusResult:
    """Processing state of an uploaded envelope as reported by the authority."""

    track_id: str
    status: str
    message: str = ""
    informed: int | None = None
    accepted: int | None = None
    rejected: int | None = None
    objected: int | None = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_UPLOAD_STATUSES


@dataclass(frozen=True, slots=True)
class Delivery:
    """Outcome of one successful submission: what was sent, and the receipt."""

    envelope: Envelope
    submission: SubmissionResult


# ─────────────────────── Document status ───────────────────────

DOCUMENT_ACCEPTED = "DOK"


@dataclass(frozen=True, slots=True)
class DocumentQuery:
    """Key data the authority matches a single issued document against."""

    document_type: DocumentType
    folio: int
    emission_date: date
    receiver_rut: str
    total_amount: int

    @classmethod
    def for_document(cls, document: TaxDocument) -> DocumentQuery:
        """Build the query from a stamped document's own stamp data."""
        stamp = document.stamp
        return cls(
            document_type=document.document_type,
            folio=document.folio,
            emission_date=stamp.emission_date,
            receiver_rut=stamp.receiver_rut,
            total_amount=stamp.total_amount,
        )


@dataclass(frozen=True, slots=True)
class DocumentStatus:
    """
    What the authority knows about one issued document.

    `status` is its code kept verbatim: "DOK" when the document was
    received and its data match; other codes report missing, annulled
    or mismatching documents.
    """

    document_type: DocumentType
    folio: int
    status: str
    message: str = ""
    error_code: str | None = None
    error_message: str = ""

    @property
    def is_accepted(self) -> bool:
        return self.status == DOCUMENT_ACCEPTED
