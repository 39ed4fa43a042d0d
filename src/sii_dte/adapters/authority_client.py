"""
Authority protocol client — seed/token authentication, upload and status via httpx.

Adapter layer — implements the AuthorityGateway port over SOAP 1.1.

Session flow (one client instance = one session, never shared):
  1. getSeed                 → seed ("semilla")
  2. sign seed (RAW mode)    → <getToken><item><Semilla/></item><Signature/></getToken>
  3. getToken(pszXml)        → token
  4. sendDTE(token, envelope)→ track id          (token is spent)
  5. getEstUp(track id)      → processing status
  6. getEstDte(document)     → status of one issued document

Answers are double-wrapped: the SOAP return element carries a second XML
document, RESPUESTA/RESP_HDR{ESTADO, GLOSA}/RESP_BODY{...}. ESTADO "00"
is success; anything else becomes AuthenticationError or
SubmissionRejectedError with the authority's code and text verbatim.

Every public method returns a Result whose failure names the stage in
which it happened. Nothing is retried here: seed/token re-acquisition is
the caller's policy, and an envelope is never resubmitted automatically.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from typing import TypeVar

import httpx
import structlog
from lxml import etree

from sii_dte.documents.envelope import render_envelope
from sii_dte.documents.xml import to_text
from sii_dte.domain import rut
from sii_dte.domain.errors import (
    AuthenticationError,
    AuthorityRejection,
    ErrorCode,
    ProtocolError,
    SessionError,
    SubmissionRejectedError,
    TransportError,
)
from sii_dte.domain.models import (
    DocumentQuery,
    DocumentStatus,
    Envelope,
    ProtocolStage,
    SigningMode,
    StatusResult,
    SubmissionResult,
)
from sii_dte.domain.result import Failure, Result
from sii_dte.signing.engine import SignatureEngine, render_signature
from sii_dte.signing.keys import SigningIdentity

log = structlog.get_logger()

T = TypeVar("T")

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
OPERATION_NS = "http://DefaultNamespace"
SUCCESS = "00"
UPLOAD_SUCCESS = frozenset({"00", "0"})

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


# ─────────────────────── Wire helpers ───────────────────────


def soap_request(operation: str, **fields: str | etree.CDATA) -> bytes:
    """A SOAP 1.1 request whose body holds `<operation>` with one child per field."""
    envelope = etree.Element(
        f"{{{SOAP_NS}}}Envelope", nsmap={"soapenv": SOAP_NS, "def": OPERATION_NS}
    )
    etree.SubElement(envelope, f"{{{SOAP_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    call = etree.SubElement(body, f"{{{OPERATION_NS}}}{operation}")
    for name, value in fields.items():
        etree.SubElement(call, name).text = value
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def parse_response(content: bytes, operation: str) -> etree._Element:
    """
    Unwrap an authority answer down to the element holding ESTADO/GLOSA.

    Accepts a SOAP envelope whose return element carries either an
    escaped XML document or child elements, or a bare XML answer.
    """
    try:
        root = etree.fromstring(content, _PARSER)
    except etree.XMLSyntaxError as e:
        raise ProtocolError(f"{operation}: response is not XML: {e}") from e

    body = root.find(f"{{{SOAP_NS}}}Body")
    if body is None:
        return root

    fault = body.find(f"{{{SOAP_NS}}}Fault")
    if fault is not None:
        raise ProtocolError(f"{operation}: SOAP fault: {fault.findtext('faultstring', '').strip()}")

    call = next(body.iterchildren(tag=etree.Element), None)
    returned = next(call.iterchildren(tag=etree.Element), None) if call is not None else None
    if returned is None:
        raise ProtocolError(f"{operation}: empty SOAP body")
    if len(returned):
        return returned

    text = (returned.text or "").strip()
    if not text:
        raise ProtocolError(f"{operation}: empty return value")
    try:
        return etree.fromstring(text.encode("utf-8"), _PARSER)
    except etree.XMLSyntaxError as e:
        raise ProtocolError(f"{operation}: return value is not XML: {e}") from e


def field(answer: etree._Element, name: str) -> str | None:
    """Text of the first element named `name` at any depth, ignoring prefixes."""
    matches = answer.xpath("descendant-or-self::*[local-name()=$name]", name=name)
    if not matches or matches[0].text is None:
        return None
    return matches[0].text.strip()


def required_field(answer: etree._Element, name: str, operation: str) -> str:
    value = field(answer, name)
    if not value:
        raise ProtocolError(f"{operation}: response lacks {name}")
    return value


def _int_field(answer: etree._Element, name: str) -> int | None:
    value = field(answer, name)
    return int(value) if value and value.lstrip("-").isdigit() else None


# ─────────────────────── Client ───────────────────────


class SiiAuthorityClient:
    """
    One authenticated session with the tax authority.

    Implements the AuthorityGateway port. Stages run strictly in order:
    a seed must come from this session before a token is requested, and a
    token from this session is spent by exactly one submission.
    """

    def __init__(
        self,
        identity: SigningIdentity,
        engine: SignatureEngine,
        seed_url: str,
        token_url: str,
        upload_url: str,
        status_url: str,
        document_status_url: str,
        company_rut: str,
        timeout: int = 30,
    ) -> None:
        self._identity = identity
        self._engine = engine
        self._seed_url = seed_url
        self._token_url = token_url
        self._upload_url = upload_url
        self._status_url = status_url
        self._document_status_url = document_status_url
        self._company_rut = rut.normalize(company_rut)
        self._timeout = timeout

        self._stage = ProtocolStage.IDLE
        self._attempting = ProtocolStage.IDLE
        self._seed: str | None = None
        self._token: str | None = None
        self._token_spent = False

    @property
    def stage(self) -> ProtocolStage:
        return self._stage

    # ─────────────────────── Port methods ───────────────────────

    def request_seed(self) -> Result[str]:
        """
        Fetch a fresh seed. Starts (or restarts) the session.

        Returns Result[str] with the seed, or a failure with
        TRANSPORT_ERROR, PROTOCOL_ERROR or AUTHENTICATION_ERROR.
        """
        return self._attempt(self._do_request_seed, "Seed request failed")

    def acquire_token(self, seed: str) -> Result[str]:
        """
        Sign `seed` and exchange it for a token.

        The seed must be the one requested in this session. A non-"00"
        status becomes AUTHENTICATION_ERROR carrying the authority's code.
        """
        return self._attempt(lambda: self._do_acquire_token(seed), "Token acquisition failed")

    def submit(self, envelope: Envelope, token: str) -> Result[SubmissionResult]:
        """
        Upload a signed envelope and return its track id.

        Spends the token. Rejections carry the authority's code and text.
        """
        return self._attempt(lambda: self._do_submit(envelope, token), "Submission failed")

    def query_status(self, track_id: str) -> Result[StatusResult]:
        return self._attempt(lambda: self._do_query_status(track_id), "Status query failed")

    def query_document_status(self, query: DocumentQuery) -> Result[DocumentStatus]:
        """
        Ask what the authority knows about one issued document.

        Needs a token from this session. The document status code comes
        back verbatim; only transport and parsing problems are failures.
        """
        return self._attempt(
            lambda: self._do_query_document_status(query), "Document status query failed"
        )

    # ─────────────────────── Stage implementations ───────────────────────

    def _do_request_seed(self) -> str:
        self._attempting = ProtocolStage.SEED_REQUESTED
        answer = self._post(self._seed_url, "getSeed", soap_request("getSeed"))
        self._check_status(answer, AuthenticationError, {SUCCESS})
        seed = required_field(answer, "SEMILLA", "getSeed")

        self._seed, self._token, self._token_spent = seed, None, False
        self._stage = ProtocolStage.SEED_REQUESTED
        log.info("authority.seed_acquired")
        return seed

    def _do_acquire_token(self, seed: str) -> str:
        self._attempting = ProtocolStage.SEED_SIGNED
        if self._stage not in (ProtocolStage.SEED_REQUESTED, ProtocolStage.SEED_SIGNED):
            raise SessionError(f"Cannot request a token in stage {self._stage.value}")
        if seed != self._seed:
            raise SessionError("Seed was not issued to this session")

        block = self._engine.sign(seed.encode("utf-8"), None, self._identity, mode=SigningMode.RAW)
        signed_seed = etree.Element("getToken")
        etree.SubElement(etree.SubElement(signed_seed, "item"), "Semilla").text = seed
        signed_seed.append(render_signature(block))
        self._stage = ProtocolStage.SEED_SIGNED

        self._attempting = ProtocolStage.TOKEN_ACQUIRED
        request = soap_request(
            "getToken", pszXml=etree.CDATA(etree.tostring(signed_seed, encoding="unicode"))
        )
        answer = self._post(self._token_url, "getToken", request)
        self._check_status(answer, AuthenticationError, {SUCCESS})
        token = required_field(answer, "TOKEN", "getToken")

        self._token, self._token_spent = token, False
        self._stage = ProtocolStage.TOKEN_ACQUIRED
        log.info("authority.token_acquired", signer=self._identity.signer_rut)
        return token

    def _do_submit(self, envelope: Envelope, token: str) -> SubmissionResult:
        self._attempting = ProtocolStage.SUBMITTED
        if self._stage is not ProtocolStage.TOKEN_ACQUIRED or self._token_spent:
            raise SessionError(f"Cannot submit in stage {self._stage.value}; acquire a fresh token")
        if token != self._token:
            raise SessionError("Token was not issued to this session")
        if not envelope.is_signed:
            raise SessionError("Envelope must be signed before submission")

        sender_body, sender_dv = rut.split(self._identity.signer_rut)
        company_body, company_dv = rut.split(self._company_rut)
        request = soap_request(
            "sendDTE",
            token=token,
            rutSender=sender_body,
            dvSender=sender_dv,
            rutCompany=company_body,
            dvCompany=company_dv,
            archivo=etree.CDATA(to_text(render_envelope(envelope))),
        )
        self._token_spent = True
        answer = self._post(self._upload_url, "sendDTE", request, token)
        status = self._check_status(answer, SubmissionRejectedError, UPLOAD_SUCCESS)
        track_id = required_field(answer, "TRACKID", "sendDTE")

        self._stage = ProtocolStage.SUBMITTED
        log.info(
            "authority.envelope_submitted",
            track_id=track_id,
            documents=len(envelope.documents),
        )
        return SubmissionResult(track_id=track_id, status=status, message=field(answer, "GLOSA") or "")

    def _do_query_status(self, track_id: str) -> StatusResult:
        self._attempting = ProtocolStage.TRACKED
        if self._token is None:
            raise SessionError("Status queries need a token from this session")

        company_body, company_dv = rut.split(self._company_rut)
        request = soap_request(
            "getEstUp",
            RutCompania=company_body,
            DvCompania=company_dv,
            TrackId=track_id,
            Token=self._token,
        )
        answer = self._post(self._status_url, "getEstUp", request, self._token)
        result = StatusResult(
            track_id=field(answer, "TRACKID") or track_id,
            status=required_field(answer, "ESTADO", "getEstUp"),
            message=field(answer, "GLOSA") or "",
            informed=_int_field(answer, "INFORMADOS"),
            accepted=_int_field(answer, "ACEPTADOS"),
            rejected=_int_field(answer, "RECHAZADOS"),
            objected=_int_field(answer, "REPAROS"),
        )

        self._stage = ProtocolStage.TRACKED
        log.info("authority.status_queried", track_id=result.track_id, status=result.status)
        return result

    def _do_query_document_status(self, query: DocumentQuery) -> DocumentStatus:
        self._attempting = ProtocolStage.TRACKED
        if self._token is None:
            raise SessionError("Status queries need a token from this session")

        signer_body, signer_dv = rut.split(self._identity.signer_rut)
        company_body, company_dv = rut.split(self._company_rut)
        receiver_body, receiver_dv = rut.split(query.receiver_rut)
        request = soap_request(
            "getEstDte",
            RutConsultante=signer_body,
            DvConsultante=signer_dv,
            RutCompania=company_body,
            DvCompania=company_dv,
            RutReceptor=receiver_body,
            DvReceptor=receiver_dv,
            TipoDte=str(int(query.document_type)),
            FolioDte=str(query.folio),
            FechaEmisionDte=query.emission_date.strftime("%d%m%Y"),
            MontoDte=str(query.total_amount),
            Token=self._token,
        )
        answer = self._post(self._document_status_url, "getEstDte", request, self._token)
        result = DocumentStatus(
            document_type=query.document_type,
            folio=query.folio,
            status=required_field(answer, "ESTADO", "getEstDte"),
            message=field(answer, "GLOSA_ESTADO") or field(answer, "GLOSA") or "",
            error_code=field(answer, "ERR_CODE"),
            error_message=field(answer, "GLOSA_ERR") or "",
        )

        self._stage = ProtocolStage.TRACKED
        log.info(
            "authority.document_status_queried",
            document_type=int(query.document_type),
            folio=query.folio,
            status=result.status,
        )
        return result

    # ─────────────────────── Plumbing ───────────────────────

    def _attempt(self, computation: Callable[[], T], message: str) -> Result[T]:
        result = Result.from_computation(computation, ErrorCode.UNEXPECTED_ERROR, message)
        if isinstance(result, Failure):
            failure = replace(result.error(), stage=self._attempting.value)
            log.warning(
                "authority.stage_failed",
                stage=failure.stage,
                code=failure.code.value,
                error=failure.message,
            )
            return Failure(failure)
        return result

    @staticmethod
    def _check_status(
        answer: etree._Element,
        rejection: type[AuthorityRejection],
        success: set[str] | frozenset[str],
    ) -> str:
        status = field(answer, "ESTADO") or field(answer, "STATUS")
        if status is None:
            raise ProtocolError("Response lacks a status code")
        if status not in success:
            raise rejection(status, field(answer, "GLOSA") or "")
        return status

    def _post(
        self, url: str, operation: str, body: bytes, token: str | None = None
    ) -> etree._Element:
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": operation}
        if token is not None:
            headers["Cookie"] = f"TOKEN={token}"
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise TransportError(f"{operation} timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            if code >= 500:
                raise TransportError(f"{operation} failed with HTTP {code}") from e
            raise ProtocolError(f"{operation} refused with HTTP {code}") from e
        except httpx.TransportError as e:
            raise TransportError(f"{operation} could not reach {url}: {e}") from e
        return parse_response(response.content, operation)
