"""
Unit tests for electronic stamp (TED) generation.

Checks the DD data block field by field, the RAW signature over it and
the authorization checks that must refuse to stamp.
"""

from __future__ import annotations

import dataclasses
from decimal import Decimal

import pytest
from lxml import etree

from sii_dte.documents.stamp import (
    GENERIC_RECEIVER_NAME,
    GENERIC_RECEIVER_RUT,
    StampGenerator,
    render_stamp,
    verify_stamp,
)
from sii_dte.documents.xml import sii
from sii_dte.domain.errors import StampGenerationError, VerificationError
from sii_dte.domain.models import BusinessDocument, FolioAuthorization, LineItem
from sii_dte.signing.keys import SigningIdentity
from tests.support import make_invoice, make_receipt, make_rsa_key


class TestGenerateStamp:
    def test_receipt_uses_generic_receiver(
        self,
        stamp_generator: StampGenerator,
        receipt_document: BusinessDocument,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        """
        GIVEN a receipt with no receiver
        WHEN its stamp is generated
        THEN the stamp names the generic final consumer.
        """
        stamp = stamp_generator.generate_stamp(receipt_document, receipt_caf, identity)

        assert stamp.receiver_rut == GENERIC_RECEIVER_RUT
        assert stamp.receiver_name == GENERIC_RECEIVER_NAME
        assert stamp.total_amount == 2380
        assert stamp.algorithm == "SHA1withRSA"

    def test_dd_fields(
        self,
        stamp_generator: StampGenerator,
        receipt_document: BusinessDocument,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        stamp = stamp_generator.generate_stamp(receipt_document, receipt_caf, identity)
        dd = etree.fromstring(stamp.dd)

        assert [etree.QName(child).localname for child in dd] == [
            "RE", "TD", "F", "FE", "RR", "RSR", "MNT", "IT1", "CAF", "TSTED",
        ]
        assert dd.findtext(sii("RE")) == "765432103"
        assert dd.findtext(sii("TD")) == "39"
        assert dd.findtext(sii("F")) == "1"
        assert dd.findtext(sii("FE")) == "2024-03-01"
        assert dd.findtext(sii("RR")) == "666666666"
        assert dd.findtext(sii("MNT")) == "2380"
        assert dd.findtext(sii("IT1")) == "Cafe Americano"
        assert dd.findtext(sii("TSTED")) == "2024-03-01T12:30:00"

    def test_caf_is_embedded_with_its_signature(
        self,
        stamp_generator: StampGenerator,
        receipt_document: BusinessDocument,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        stamp = stamp_generator.generate_stamp(receipt_document, receipt_caf, identity)
        caf = etree.fromstring(stamp.dd).find(sii("CAF"))

        assert caf.findtext(sii("FRMA")) == receipt_caf.authority_signature
        assert caf.findtext(f"{sii('DA')}/{sii('RNG')}/{sii('H')}") == "100"

    def test_invoice_names_its_receiver(
        self,
        stamp_generator: StampGenerator,
        invoice_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        stamp = stamp_generator.generate_stamp(make_invoice(), invoice_caf, identity)

        assert stamp.receiver_rut == "11111111-1"
        assert etree.fromstring(stamp.dd).findtext(sii("RSR")) == "Cliente Ltda"
        assert stamp.total_amount == 119000

    def test_first_item_is_truncated(
        self,
        stamp_generator: StampGenerator,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        document = dataclasses.replace(
            make_receipt(),
            items=(LineItem(description="X" * 60, quantity=Decimal("1"), unit_price=Decimal("100")),),
        )

        stamp = stamp_generator.generate_stamp(document, receipt_caf, identity)

        assert stamp.first_item == "X" * 40

    def test_signature_verifies_with_identity_key(
        self,
        stamp_generator: StampGenerator,
        receipt_document: BusinessDocument,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        stamp = stamp_generator.generate_stamp(receipt_document, receipt_caf, identity)

        assert verify_stamp(stamp, identity.public_key)
        assert verify_stamp(render_stamp(stamp), identity.public_key)

    def test_rendered_stamp_rejects_other_key(
        self,
        stamp_generator: StampGenerator,
        receipt_document: BusinessDocument,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        ted = render_stamp(stamp_generator.generate_stamp(receipt_document, receipt_caf, identity))

        with pytest.raises(VerificationError):
            verify_stamp(ted, make_rsa_key().public_key())

    def test_edited_amount_breaks_stamp(
        self,
        stamp_generator: StampGenerator,
        receipt_document: BusinessDocument,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        ted = render_stamp(stamp_generator.generate_stamp(receipt_document, receipt_caf, identity))
        ted.find(f"{sii('DD')}/{sii('MNT')}").text = "1"

        with pytest.raises(VerificationError):
            verify_stamp(ted, identity.public_key)


class TestAuthorizationChecks:
    def test_folio_outside_range(
        self,
        stamp_generator: StampGenerator,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        """
        GIVEN a CAF for folios 1..100
        WHEN folio 101 is stamped
        THEN StampGenerationError is raised.
        """
        with pytest.raises(StampGenerationError, match="outside authorized range"):
            stamp_generator.generate_stamp(make_receipt(folio=101), receipt_caf, identity)

    def test_wrong_document_type(
        self,
        stamp_generator: StampGenerator,
        invoice_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        with pytest.raises(StampGenerationError, match="type 33"):
            stamp_generator.generate_stamp(make_receipt(), invoice_caf, identity)

    def test_wrong_emitter(
        self,
        stamp_generator: StampGenerator,
        receipt_caf: FolioAuthorization,
        identity: SigningIdentity,
    ) -> None:
        with pytest.raises(StampGenerationError, match="belongs to"):
            stamp_generator.generate_stamp(
                make_receipt(emitter_rut="11111111-1"), receipt_caf, identity
            )
