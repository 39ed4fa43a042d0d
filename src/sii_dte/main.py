"""
Application entry point — wires dependencies and serves the HTTP API.

Composition root: loads the signing identity and CAFs, builds the
signature engine, stamp generator and envelope assembler, and binds the
pipeline functions to them.

This is the ONLY place where concrete classes are instantiated.

Responsibilities:
  1. Configure structlog
  2. Load and validate configuration from environment
  3. Load key material (fails fast on unreadable or expired credentials)
  4. Wire the pipeline (partial application with collaborators)
  5. Serve the ASGI app with uvicorn
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import partial

import structlog

from sii_dte import __version__
from sii_dte.adapters.authority_client import SiiAuthorityClient
from sii_dte.adapters.caf_store import FolioAuthorizationStore
from sii_dte.config import AppSettings
from sii_dte.documents.envelope import EnvelopeAssembler
from sii_dte.documents.stamp import StampGenerator
from sii_dte.domain.errors import DteError
from sii_dte.domain.models import (
    BusinessDocument,
    Delivery,
    DocumentQuery,
    DocumentStatus,
    StatusResult,
)
from sii_dte.domain.result import Result
from sii_dte.pipeline import (
    query_delivery_status,
    query_document_status,
    submit_batch_for_signing_and_delivery,
)
from sii_dte.signing.engine import SignatureEngine
from sii_dte.signing.keys import SigningIdentity, load_identity, validate


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


type SubmitFn = Callable[[Sequence[BusinessDocument]], Result[Delivery]]
type StatusFn = Callable[[str], Result[StatusResult]]
type DocumentStatusFn = Callable[[DocumentQuery], Result[DocumentStatus]]


@dataclass(frozen=True, slots=True)
class Components:
    identity: SigningIdentity
    submit: SubmitFn
    status: StatusFn
    document_status: DocumentStatusFn


def _load_identity(settings: AppSettings) -> SigningIdentity:
    signing = settings.signing
    if signing.pkcs12_path is not None:
        identity = load_identity(
            signing.pkcs12_path,
            password=signing.password_value(),
            signer_rut=signing.signer_rut,
        )
    else:
        identity = load_identity(
            signing.certificate_path,  # type: ignore[arg-type]
            signing.private_key_path,
            password=signing.password_value(),
            signer_rut=signing.signer_rut,
        )
    return validate(identity)


def build_components(settings: AppSettings) -> Components:
    """
    Instantiate every collaborator from application settings.

    Raises DteError subclasses when key material or CAFs are unusable.
    """
    identity = _load_identity(settings)
    engine = SignatureEngine(digest_algorithm=settings.signing.algorithm)
    authorizations = FolioAuthorizationStore.from_directory(
        settings.caf.directory, settings.caf.authority_public_key_path
    )
    assembler = EnvelopeAssembler(
        identity=identity,
        engine=engine,
        stamp_generator=StampGenerator(engine),
        authorizations=authorizations,
        authority_rut=settings.authority.authority_rut,
    )
    gateway_factory = partial(
        SiiAuthorityClient,
        identity=identity,
        engine=engine,
        seed_url=settings.authority.seed_url,
        token_url=settings.authority.token_url,
        upload_url=settings.authority.upload_url,
        status_url=settings.authority.status_url,
        document_status_url=settings.authority.document_status_url,
        company_rut=settings.emitter.rut,
        timeout=settings.authority.timeout_seconds,
    )
    return Components(
        identity=identity,
        submit=partial(
            submit_batch_for_signing_and_delivery,
            assembler=assembler,
            gateway_factory=gateway_factory,
            resolution_date=settings.emitter.resolution_date,
            resolution_number=settings.emitter.resolution_number,
            retry_attempts=settings.retry.attempts,
            retry_backoff=settings.retry.backoff_seconds,
        ),
        status=partial(
            query_delivery_status,
            gateway_factory=gateway_factory,
            retry_attempts=settings.retry.attempts,
            retry_backoff=settings.retry.backoff_seconds,
        ),
        document_status=partial(
            query_document_status,
            gateway_factory=gateway_factory,
            retry_attempts=settings.retry.attempts,
            retry_backoff=settings.retry.backoff_seconds,
        ),
    )


def main() -> None:
    """Validate configuration and key material, then serve the HTTP API."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        emitter=settings.emitter.rut,
        digest=settings.signing.digest_algorithm,
    )

    try:
        build_components(settings)
    except DteError as e:
        log.error("app.fatal_error", error=str(e), code=e.error_code.value)
        sys.exit(1)

    import uvicorn

    uvicorn.run(
        "sii_dte.asgi:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
