"""
DTE rendering — turn a BusinessDocument and its stamp into XML.

  DTE version="1.0"
   └── Documento ID="F{folio}T{type}"
        ├── Encabezado   IdDoc, Emisor, Receptor?, Totales
        ├── Detalle*     one per line item
        ├── Referencia*  documents this one amends or cites
        ├── TED          electronic stamp
        └── TmstFirma

Optional fields are emitted only when they carry a value: product code,
positive discount, due date, receiver, party address details, reference
code and reason. Receipts
use the receipt vocabulary (RznSocEmisor, GiroEmisor, IndServicio).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from lxml import etree

from sii_dte.documents.stamp import TIMESTAMP_FORMAT, render_stamp
from sii_dte.documents.xml import E
from sii_dte.domain import rut
from sii_dte.domain.models import BusinessDocument, DocumentStamp, LineItem, Party, Reference

RECEIPT_SERVICE_INDICATOR = "3"
PRODUCT_CODE_TYPE = "INT1"


def _optional(tag: str, value: object) -> etree._Element | None:
    if value is None or value == "":
        return None
    return getattr(E, tag)(str(value))


def _element(tag: str, *children: etree._Element | None, **attributes: str) -> etree._Element:
    return getattr(E, tag)(*[c for c in children if c is not None], **attributes)


def _number(value: Decimal) -> str:
    return format(value.normalize(), "f")


def render_document(
    document: BusinessDocument,
    stamp: DocumentStamp,
    signed_at: datetime,
) -> etree._Element:
    """The unsigned <DTE>; the caller appends the document signature."""
    documento = _element(
        "Documento",
        _element(
            "Encabezado",
            _id_doc(document),
            _emitter(document.emitter, document.document_type.is_receipt),
            _receiver(document.receiver) if document.receiver else None,
            _totals(document),
        ),
        *[_detail(number, item) for number, item in enumerate(document.items, start=1)],
        *[_reference(reference) for reference in document.references],
        render_stamp(stamp),
        E.TmstFirma(signed_at.strftime(TIMESTAMP_FORMAT)),
        ID=document.reference_id,
    )
    return E.DTE(documento, version="1.0")


def _id_doc(document: BusinessDocument) -> etree._Element:
    is_receipt = document.document_type.is_receipt
    return _element(
        "IdDoc",
        E.TipoDTE(str(int(document.document_type))),
        E.Folio(str(document.folio)),
        E.FchEmis(document.emission_date.isoformat()),
        E.IndServicio(RECEIPT_SERVICE_INDICATOR) if is_receipt else None,
        _optional("FchVenc", document.due_date.isoformat() if document.due_date else None),
    )


def _emitter(emitter: Party, is_receipt: bool) -> etree._Element:
    if is_receipt:
        return _element(
            "Emisor",
            E.RUTEmisor(rut.normalize(emitter.rut)),
            E.RznSocEmisor(emitter.name),
            _optional("GiroEmisor", emitter.business_line),
            _optional("DirOrigen", emitter.address),
            _optional("CmnaOrigen", emitter.commune),
            _optional("CiudadOrigen", emitter.city),
        )
    return _element(
        "Emisor",
        E.RUTEmisor(rut.normalize(emitter.rut)),
        E.RznSoc(emitter.name),
        _optional("GiroEmis", emitter.business_line),
        _optional("Acteco", emitter.activity_code),
        _optional("DirOrigen", emitter.address),
        _optional("CmnaOrigen", emitter.commune),
        _optional("CiudadOrigen", emitter.city),
    )


def _receiver(receiver: Party) -> etree._Element:
    return _element(
        "Receptor",
        E.RUTRecep(rut.normalize(receiver.rut)),
        E.RznSocRecep(receiver.name),
        _optional("GiroRecep", receiver.business_line),
        _optional("DirRecep", receiver.address),
        _optional("CmnaRecep", receiver.commune),
        _optional("CiudadRecep", receiver.city),
    )


def _totals(document: BusinessDocument) -> etree._Element:
    totals = document.totals
    return _element(
        "Totales",
        E.MntNeto(str(totals.net)),
        E.MntExe(str(totals.exempt)) if totals.exempt > 0 else None,
        None if document.document_type.is_receipt else E.TasaIVA(str(totals.tax_rate)),
        E.IVA(str(totals.tax)),
        E.MntTotal(str(totals.total)),
    )


def _detail(number: int, item: LineItem) -> etree._Element:
    code = (
        E.CdgItem(E.TpoCodigo(PRODUCT_CODE_TYPE), E.VlrCodigo(item.product_code))
        if item.product_code
        else None
    )
    return _element(
        "Detalle",
        E.NroLinDet(str(number)),
        code,
        E.IndExe("1") if item.exempt else None,
        E.NmbItem(item.description),
        E.QtyItem(_number(item.quantity)),
        E.PrcItem(_number(item.unit_price)),
        E.DescuentoMonto(str(item.discount_amount)) if item.discount_amount > 0 else None,
        E.MontoItem(str(item.amount)),
    )


def _reference(reference: Reference) -> etree._Element:
    return _element(
        "Referencia",
        E.NroLinRef(str(reference.line_number)),
        E.TpoDocRef(reference.document_type),
        E.FolioRef(reference.folio),
        E.FchRef(reference.emission_date.isoformat()),
        _optional("CodRef", int(reference.code) if reference.code else None),
        _optional("RazonRef", reference.reason),
    )
