"""
CAF store — folio authorizations supplied by the operator.

Implements the FolioAuthorizationSource port. CAFs are downloaded from
the authority by the emitter and dropped into a directory as XML files;
this store indexes them by (emitter RUT, document type) and picks the
one whose range covers a folio. It never creates an authorization.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from sii_dte.documents.caf import parse_folio_authorization, verify_authority_signature
from sii_dte.domain import rut
from sii_dte.domain.errors import StampGenerationError
from sii_dte.domain.models import DocumentType, FolioAuthorization

log = structlog.get_logger()


class FolioAuthorizationStore:
    def __init__(
        self,
        authorizations: Iterable[FolioAuthorization],
        authority_key: rsa.RSAPublicKey | None = None,
    ) -> None:
        self._index: dict[tuple[str, int], list[FolioAuthorization]] = defaultdict(list)
        for authorization in authorizations:
            if authority_key is not None:
                verify_authority_signature(authorization, authority_key)
            key = (rut.normalize(authorization.emitter_rut), authorization.document_type)
            self._index[key].append(authorization)

    @classmethod
    def from_directory(
        cls, directory: Path, authority_key_path: Path | None = None
    ) -> FolioAuthorizationStore:
        """Load every *.xml file in `directory`. Raises StampGenerationError on a bad file."""
        authority_key = _load_authority_key(authority_key_path) if authority_key_path else None
        authorizations = []
        for path in sorted(directory.glob("*.xml")):
            try:
                authorizations.append(parse_folio_authorization(path.read_bytes()))
            except StampGenerationError as e:
                raise StampGenerationError(f"{path.name}: {e}") from e
        log.info(
            "caf_store.loaded",
            directory=str(directory),
            count=len(authorizations),
            verified=authority_key is not None,
        )
        return cls(authorizations, authority_key)

    def __len__(self) -> int:
        return sum(len(v) for v in self._index.values())

    def lookup(
        self, emitter_rut: str, document_type: DocumentType, folio: int
    ) -> FolioAuthorization:
        candidates = self._index.get((rut.normalize(emitter_rut), int(document_type)), [])
        if not candidates:
            raise StampGenerationError(
                f"No folio authorization for emitter {emitter_rut} and type {int(document_type)}"
            )
        for authorization in candidates:
            if authorization.covers(folio):
                return authorization
        ranges = ", ".join(f"[{a.range_start}, {a.range_end}]" for a in candidates)
        raise StampGenerationError(f"Folio {folio} outside authorized ranges {ranges}")


def _load_authority_key(path: Path) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(path.read_bytes())
    except (OSError, ValueError) as e:
        raise StampGenerationError(f"Cannot load authority public key {path}: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise StampGenerationError("Authority public key must be RSA")
    return key
