"""
Unit tests for the delivery pipeline.

Uses mock gateways (fake adapters) and a real assembler to test the
pipeline in isolation:

  1. assemble envelope            (real signing, fixed clocks)
  2. request_seed()  → seed       ┐ retried on transport errors
  3. acquire_token() → token      ┘
  4. submit(envelope, token)      never retried

Test categories:
  - Success track: every stage succeeds → Result.success(Delivery)
  - Failure at each stage, with short-circuiting of later stages
  - Retry policy: transient failures retried, rejections not
"""

from __future__ import annotations

import dataclasses
from datetime import date
from unittest.mock import MagicMock

from sii_dte.documents.envelope import EnvelopeAssembler
from sii_dte.domain.errors import AuthenticationError, ErrorCode, TransportError
from sii_dte.domain.models import (
    DocumentQuery,
    DocumentStatus,
    DocumentType,
    Party,
    StatusResult,
    SubmissionResult,
)
from sii_dte.domain.result import Result
from sii_dte.pipeline import (
    authenticate,
    query_delivery_status,
    query_document_status,
    submit_batch_for_signing_and_delivery,
    submit_for_signing_and_delivery,
)
from tests.assertions import ResultAssertions
from tests.support import make_invoice, make_receipt

RESOLUTION_DATE = date(2024, 1, 1)


def _transport_failure() -> Result[str]:
    return Result.failure(
        ErrorCode.TRANSPORT_ERROR, "timed out", TransportError("timed out"), "seed_requested"
    )


def _make_gateway(
    seed: Result[str] | None = None,
    token: Result[str] | None = None,
    submission: Result[SubmissionResult] | None = None,
    status: Result[StatusResult] | None = None,
) -> MagicMock:
    """Create a mock AuthorityGateway returning the given Results."""
    gateway = MagicMock()
    gateway.request_seed.return_value = Result.success("033320123456") if seed is None else seed
    gateway.acquire_token.return_value = Result.success("TOKEN1") if token is None else token
    gateway.submit.return_value = (
        Result.success(SubmissionResult(track_id="4711", status="0"))
        if submission is None
        else submission
    )
    gateway.query_status.return_value = (
        Result.success(StatusResult(track_id="4711", status="EPR", accepted=1, rejected=0))
        if status is None
        else status
    )
    return gateway


# ─────────────────────── Success Track ───────────────────────


class TestPipelineSuccess:
    def test_single_document_delivered(self, assembler: EnvelopeAssembler) -> None:
        """
        GIVEN a gateway where every stage succeeds
        WHEN a receipt is submitted
        THEN the Delivery holds the signed envelope and the track id.
        """
        gateway = _make_gateway()

        result = submit_for_signing_and_delivery(
            make_receipt(), assembler, lambda: gateway, RESOLUTION_DATE, 0
        )

        delivery = ResultAssertions.assert_success(result)
        assert delivery.submission.track_id == "4711"
        assert delivery.envelope.is_signed
        gateway.acquire_token.assert_called_once_with("033320123456")
        gateway.submit.assert_called_once_with(delivery.envelope, "TOKEN1")

    def test_batch_uses_one_envelope(self, assembler: EnvelopeAssembler) -> None:
        gateway = _make_gateway()

        result = submit_batch_for_signing_and_delivery(
            [make_invoice(folio=10), make_invoice(folio=11)], assembler, lambda: gateway, RESOLUTION_DATE, 0
        )

        delivery = ResultAssertions.assert_success(result)
        assert len(delivery.envelope.documents) == 2
        gateway.submit.assert_called_once()

    def test_each_call_opens_a_new_session(self, assembler: EnvelopeAssembler) -> None:
        factory = MagicMock(side_effect=[_make_gateway(), _make_gateway()])

        submit_for_signing_and_delivery(make_receipt(folio=1), assembler, factory, RESOLUTION_DATE, 0)
        submit_for_signing_and_delivery(make_receipt(folio=2), assembler, factory, RESOLUTION_DATE, 0)

        assert factory.call_count == 2


# ─────────────────────── Failure Track ───────────────────────


class TestPipelineFailures:
    def test_assembly_failure_makes_no_network_calls(self, assembler: EnvelopeAssembler) -> None:
        """
        GIVEN a batch mixing receipts and invoices
        WHEN it is submitted
        THEN HETEROGENEOUS_BATCH is returned and no session is opened.
        """
        factory = MagicMock()

        result = submit_batch_for_signing_and_delivery(
            [make_receipt(), make_invoice()], assembler, factory, RESOLUTION_DATE, 0
        )

        ResultAssertions.assert_failure(result, ErrorCode.HETEROGENEOUS_BATCH)
        ResultAssertions.assert_failure_stage(result, "assembly")
        factory.assert_not_called()

    def test_missing_caf(self, assembler: EnvelopeAssembler) -> None:
        result = submit_for_signing_and_delivery(
            make_receipt(folio=999), assembler, MagicMock(), RESOLUTION_DATE, 0
        )

        ResultAssertions.assert_failure(result, ErrorCode.STAMP_GENERATION_ERROR)

    def test_malformed_receiver_rut_is_invalid_document(self, assembler: EnvelopeAssembler) -> None:
        """
        GIVEN an invoice whose receiver RUT has the wrong check digit
        WHEN it is submitted
        THEN INVALID_DOCUMENT is returned from assembly and no session is opened.
        """
        factory = MagicMock()
        invoice = dataclasses.replace(
            make_invoice(), receiver=Party(rut="11111111-2", name="Cliente Ltda")
        )

        result = submit_for_signing_and_delivery(invoice, assembler, factory, RESOLUTION_DATE, 0)

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_DOCUMENT)
        ResultAssertions.assert_failure_stage(result, "assembly")
        factory.assert_not_called()

    def test_duplicate_folio_is_heterogeneous_batch(self, assembler: EnvelopeAssembler) -> None:
        factory = MagicMock()

        result = submit_batch_for_signing_and_delivery(
            [make_receipt(folio=5), make_receipt(folio=5)], assembler, factory, RESOLUTION_DATE, 0
        )

        ResultAssertions.assert_failure(result, ErrorCode.HETEROGENEOUS_BATCH)
        factory.assert_not_called()

    def test_token_failure_short_circuits(self, assembler: EnvelopeAssembler) -> None:
        gateway = _make_gateway(
            token=Result.failure(
                ErrorCode.AUTHENTICATION_ERROR,
                "Token acquisition failed",
                AuthenticationError("01", "Error de firma"),
                "token_acquired",
            )
        )

        result = submit_for_signing_and_delivery(
            make_receipt(), assembler, lambda: gateway, RESOLUTION_DATE, 0, retry_attempts=3
        )

        ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_ERROR)
        ResultAssertions.assert_failure_stage(result, "token_acquired")
        gateway.submit.assert_not_called()
        gateway.request_seed.assert_called_once()

    def test_submission_is_never_retried(self, assembler: EnvelopeAssembler) -> None:
        gateway = _make_gateway(
            submission=Result.failure(ErrorCode.TRANSPORT_ERROR, "upload timed out", stage="submitted")
        )

        result = submit_for_signing_and_delivery(
            make_receipt(), assembler, lambda: gateway, RESOLUTION_DATE, 0, retry_attempts=3, retry_backoff=0
        )

        ResultAssertions.assert_failure(result, ErrorCode.TRANSPORT_ERROR)
        gateway.submit.assert_called_once()


# ─────────────────────── Retry Policy ───────────────────────


class TestAuthenticateRetry:
    def test_transient_seed_failure_is_retried(self) -> None:
        """
        GIVEN a seed service that times out once and then answers
        WHEN authenticate runs with three attempts
        THEN the second attempt obtains a token.
        """
        gateway = _make_gateway()
        gateway.request_seed.side_effect = [_transport_failure(), Result.success("S2")]

        result = authenticate(gateway, attempts=3, backoff=0)

        ResultAssertions.assert_success_value(result, "TOKEN1")
        assert gateway.request_seed.call_count == 2
        gateway.acquire_token.assert_called_once_with("S2")

    def test_gives_up_after_attempts(self) -> None:
        gateway = _make_gateway(seed=_transport_failure())

        result = authenticate(gateway, attempts=3, backoff=0)

        ResultAssertions.assert_failure(result, ErrorCode.TRANSPORT_ERROR)
        assert gateway.request_seed.call_count == 3

    def test_rejection_is_not_retried(self) -> None:
        gateway = _make_gateway(
            seed=Result.failure(ErrorCode.AUTHENTICATION_ERROR, "refused", stage="seed_requested")
        )

        authenticate(gateway, attempts=3, backoff=0)

        gateway.request_seed.assert_called_once()

    def test_single_attempt_by_default(self) -> None:
        gateway = _make_gateway(seed=_transport_failure())

        authenticate(gateway)

        gateway.request_seed.assert_called_once()


class TestQueryDeliveryStatus:
    def test_status_after_authentication(self) -> None:
        gateway = _make_gateway()

        result = query_delivery_status("4711", lambda: gateway)

        status = ResultAssertions.assert_success(result)
        assert status.is_final
        gateway.query_status.assert_called_once_with("4711")

    def test_authentication_failure_skips_query(self) -> None:
        gateway = _make_gateway(seed=_transport_failure())

        result = query_delivery_status("4711", lambda: gateway, retry_attempts=2, retry_backoff=0)

        ResultAssertions.assert_failure(result, ErrorCode.TRANSPORT_ERROR)
        gateway.query_status.assert_not_called()


class TestQueryDocumentStatus:
    _query = DocumentQuery(
        document_type=DocumentType.INVOICE,
        folio=10,
        emission_date=date(2024, 3, 1),
        receiver_rut="11111111-1",
        total_amount=119000,
    )

    def test_document_status_after_authentication(self) -> None:
        """
        GIVEN a gateway that authenticates and knows invoice 10
        WHEN its document status is queried
        THEN the gateway is asked once with the query and the status is returned.
        """
        gateway = _make_gateway()
        gateway.query_document_status.return_value = Result.success(
            DocumentStatus(document_type=DocumentType.INVOICE, folio=10, status="DOK")
        )

        result = query_document_status(self._query, lambda: gateway)

        status = ResultAssertions.assert_success(result)
        assert status.is_accepted
        gateway.acquire_token.assert_called_once_with("033320123456")
        gateway.query_document_status.assert_called_once_with(self._query)

    def test_transient_authentication_failure_is_retried(self) -> None:
        gateway = _make_gateway()
        gateway.request_seed.side_effect = [_transport_failure(), Result.success("S2")]
        gateway.query_document_status.return_value = Result.success(
            DocumentStatus(document_type=DocumentType.INVOICE, folio=10, status="FAU")
        )

        result = query_document_status(self._query, lambda: gateway, retry_attempts=2, retry_backoff=0)

        assert ResultAssertions.assert_success(result).status == "FAU"
        assert gateway.request_seed.call_count == 2
