"""
Ports — Protocol-based interfaces between the core and its adapters.

  Domain ← Ports (protocols) ← Adapters (implementations)

Two collaborators sit outside the core:
  1. FolioAuthorizationSource → supplies CAFs (never fabricated)
  2. AuthorityGateway         → one stateful session with the tax authority:
                                seed → signed seed → token → submit → status,
                                or token → status of one issued document

Each port is a Protocol, so adapters satisfy it structurally.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sii_dte.domain.models import (
    DocumentQuery,
    DocumentStatus,
    DocumentType,
    Envelope,
    FolioAuthorization,
    ProtocolStage,
    StatusResult,
    SubmissionResult,
)
from sii_dte.domain.result import Result


@runtime_checkable
class FolioAuthorizationSource(Protocol):
    """
    Port: look up the CAF authorizing `folio` for an emitter and type.

    Raises StampGenerationError when no supplied authorization covers it.
    """

    def lookup(
        self, emitter_rut: str, document_type: DocumentType, folio: int
    ) -> FolioAuthorization: ...


@runtime_checkable
class AuthorityGateway(Protocol):
    """
    Port: a single authenticated session with the tax authority.

    Stages must run in order; a token is good for one envelope. Sessions
    are never shared between concurrent submissions.
    """

    @property
    def stage(self) -> ProtocolStage: ...

    def request_seed(self) -> Result[str]: ...

    def acquire_token(self, seed: str) -> Result[str]: ...

    def submit(self, envelope: Envelope, token: str) -> Result[SubmissionResult]: ...

    def query_status(self, track_id: str) -> Result[StatusResult]: ...

    def query_document_status(self, query: DocumentQuery) -> Result[DocumentStatus]: ...
