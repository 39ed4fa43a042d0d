"""
Pipeline — sign, submit and track tax documents on the Result railway.

  assemble envelope (stamp → sign documents → sign envelope)
    → request_seed()
      → acquire_token(seed)          ┐ retried on transient failures
        → submit(envelope, token)    ┘ never retried
          → Delivery(envelope, submission)

Every call opens a fresh authority session through `gateway_factory`,
so concurrent submissions never share a token. Failures short-circuit
with the stage and typed exception attached.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import date
from functools import partial

import structlog
from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

from sii_dte.documents.envelope import EnvelopeAssembler
from sii_dte.domain.errors import ErrorCode
from sii_dte.domain.models import (
    BusinessDocument,
    Delivery,
    DocumentQuery,
    DocumentStatus,
    Envelope,
    StatusResult,
)
from sii_dte.domain.ports import AuthorityGateway
from sii_dte.domain.result import Result

log = structlog.get_logger()

type GatewayFactory = Callable[[], AuthorityGateway]


def _is_transient(result: Result[str]) -> bool:
    return result.is_failure() and result.error().retryable


def authenticate(
    gateway: AuthorityGateway, attempts: int = 1, backoff: float = 1.0
) -> Result[str]:
    """
    Run seed → signed seed → token on `gateway`.

    Retries the whole exchange with a new seed, up to `attempts` times,
    while the failure is retryable (transport errors only).
    """
    retrying = Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=backoff, max=30),
        retry=retry_if_result(_is_transient),
        retry_error_callback=lambda state: state.outcome.result(),
    )
    return retrying(lambda: gateway.request_seed().flat_map(gateway.acquire_token))


def _deliver(
    envelope: Envelope,
    gateway_factory: GatewayFactory,
    retry_attempts: int,
    retry_backoff: float,
) -> Result[Delivery]:
    gateway = gateway_factory()
    return (
        authenticate(gateway, retry_attempts, retry_backoff)
        .flat_map(lambda token: gateway.submit(envelope, token))
        .map(lambda submission: Delivery(envelope=envelope, submission=submission))
    )


def submit_batch_for_signing_and_delivery(
    documents: Sequence[BusinessDocument],
    assembler: EnvelopeAssembler,
    gateway_factory: GatewayFactory,
    resolution_date: date,
    resolution_number: int,
    retry_attempts: int = 1,
    retry_backoff: float = 1.0,
) -> Result[Delivery]:
    """
    Assemble `documents` into one signed envelope and deliver it.

    Returns Result[Delivery] with the envelope and the authority's track
    id, or the first failure (assembly errors happen before any network
    traffic).
    """
    return (
        Result.from_computation(
            lambda: assembler.assemble_batch(documents, resolution_date, resolution_number),
            ErrorCode.UNEXPECTED_ERROR,
            "Envelope assembly failed",
            stage="assembly",
        )
        .flat_map(
            partial(
                _deliver,
                gateway_factory=gateway_factory,
                retry_attempts=retry_attempts,
                retry_backoff=retry_backoff,
            )
        )
        .peek(
            lambda delivery: log.info(
                "pipeline.delivered",
                track_id=delivery.submission.track_id,
                documents=len(delivery.envelope.documents),
            )
        )
        .peek_failure(
            lambda failure: log.error(
                "pipeline.delivery_failed",
                code=failure.code.value,
                stage=failure.stage,
                error=failure.message,
            )
        )
    )


def submit_for_signing_and_delivery(
    document: BusinessDocument,
    assembler: EnvelopeAssembler,
    gateway_factory: GatewayFactory,
    resolution_date: date,
    resolution_number: int,
    retry_attempts: int = 1,
    retry_backoff: float = 1.0,
) -> Result[Delivery]:
    """Single-document variant of submit_batch_for_signing_and_delivery."""
    return submit_batch_for_signing_and_delivery(
        [document],
        assembler,
        gateway_factory,
        resolution_date,
        resolution_number,
        retry_attempts,
        retry_backoff,
    )


def query_delivery_status(
    track_id: str,
    gateway_factory: GatewayFactory,
    retry_attempts: int = 1,
    retry_backoff: float = 1.0,
) -> Result[StatusResult]:
    """Authenticate a fresh session and ask for the status of `track_id`."""
    gateway = gateway_factory()
    return authenticate(gateway, retry_attempts, retry_backoff).flat_map(
        lambda _token: gateway.query_status(track_id)
    )


def query_document_status(
    query: DocumentQuery,
    gateway_factory: GatewayFactory,
    retry_attempts: int = 1,
    retry_backoff: float = 1.0,
) -> Result[DocumentStatus]:
    """Authenticate a fresh session and ask about one issued document."""
    gateway = gateway_factory()
    return authenticate(gateway, retry_attempts, retry_backoff).flat_map(
        lambda _token: gateway.query_document_status(query)
    )
