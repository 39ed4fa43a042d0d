"""
Shared test fixtures for the sii-dte test suite.

Key material is generated once per session (RSA key generation is the
slowest thing the suite does). Document and envelope collaborators are
rebuilt per test with fixed clocks so that stamps and envelopes are
reproducible.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from sii_dte.adapters.authority_client import SiiAuthorityClient
from sii_dte.adapters.caf_store import FolioAuthorizationStore
from sii_dte.documents.caf import parse_folio_authorization
from sii_dte.documents.envelope import EnvelopeAssembler
from sii_dte.documents.stamp import StampGenerator
from sii_dte.domain.models import BusinessDocument, FolioAuthorization
from sii_dte.signing.engine import SignatureEngine
from sii_dte.signing.keys import SigningIdentity
from tests.support import (
    DOCUMENT_STATUS_URL,
    EMITTER_RUT,
    FIXED_NOW,
    SEED_URL,
    SIGNER_RUT,
    STATUS_URL,
    TOKEN_URL,
    UPLOAD_URL,
    build_caf_xml,
    make_certificate,
    make_invoice,
    make_receipt,
    make_rsa_key,
)


def fixed_clock() -> datetime:
    return FIXED_NOW


# ─────────────────────── Key material ───────────────────────


@pytest.fixture(scope="session")
def signer_key() -> rsa.RSAPrivateKey:
    return make_rsa_key()


@pytest.fixture(scope="session")
def authority_key() -> rsa.RSAPrivateKey:
    """Stand-in for the tax authority key that signs CAFs."""
    return make_rsa_key()


@pytest.fixture(scope="session")
def certificate(signer_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return make_certificate(signer_key)


@pytest.fixture(scope="session")
def identity(certificate: x509.Certificate, signer_key: rsa.RSAPrivateKey) -> SigningIdentity:
    return SigningIdentity(certificate=certificate, private_key=signer_key, signer_rut=SIGNER_RUT)


# ─────────────────────── CAFs ───────────────────────


@pytest.fixture(scope="session")
def receipt_caf(authority_key: rsa.RSAPrivateKey) -> FolioAuthorization:
    """Receipts (type 39), folios 1..100."""
    return parse_folio_authorization(build_caf_xml(authority_key, document_type=39))


@pytest.fixture(scope="session")
def invoice_caf(authority_key: rsa.RSAPrivateKey) -> FolioAuthorization:
    """Invoices (type 33), folios 1..50."""
    return parse_folio_authorization(build_caf_xml(authority_key, document_type=33, high=50))


@pytest.fixture()
def caf_store(
    receipt_caf: FolioAuthorization,
    invoice_caf: FolioAuthorization,
    authority_key: rsa.RSAPrivateKey,
) -> FolioAuthorizationStore:
    return FolioAuthorizationStore([receipt_caf, invoice_caf], authority_key.public_key())


@pytest.fixture()
def caf_directory(tmp_path: Path, authority_key: rsa.RSAPrivateKey) -> Path:
    directory = tmp_path / "cafs"
    directory.mkdir()
    (directory / "caf_39.xml").write_bytes(build_caf_xml(authority_key, document_type=39))
    (directory / "caf_33.xml").write_bytes(
        build_caf_xml(authority_key, document_type=33, high=50)
    )
    return directory


# ─────────────────────── Collaborators ───────────────────────


@pytest.fixture()
def engine() -> SignatureEngine:
    return SignatureEngine()


@pytest.fixture()
def stamp_generator(engine: SignatureEngine) -> StampGenerator:
    return StampGenerator(engine, clock=fixed_clock)


@pytest.fixture()
def assembler(
    identity: SigningIdentity,
    engine: SignatureEngine,
    stamp_generator: StampGenerator,
    caf_store: FolioAuthorizationStore,
) -> EnvelopeAssembler:
    return EnvelopeAssembler(
        identity=identity,
        engine=engine,
        stamp_generator=stamp_generator,
        authorizations=caf_store,
        clock=fixed_clock,
    )


@pytest.fixture()
def authority_client(identity: SigningIdentity, engine: SignatureEngine) -> SiiAuthorityClient:
    return SiiAuthorityClient(
        identity=identity,
        engine=engine,
        seed_url=SEED_URL,
        token_url=TOKEN_URL,
        upload_url=UPLOAD_URL,
        status_url=STATUS_URL,
        document_status_url=DOCUMENT_STATUS_URL,
        company_rut=EMITTER_RUT,
        timeout=5,
    )


# ─────────────────────── Documents ───────────────────────


@pytest.fixture()
def receipt_document() -> BusinessDocument:
    return make_receipt()


@pytest.fixture()
def invoice_document() -> BusinessDocument:
    return make_invoice()
