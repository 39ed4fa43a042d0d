"""
Error taxonomy — typed exceptions raised by the signing and document layers.

Every exception class carries an ErrorCode so that the Result railway
(see result.py) can classify a raised error without inspecting messages:

  DteError
    ├── CredentialError            (missing/unreadable/non-RSA key material)
    ├── ExpiredCredentialError     (outside the certificate validity window)
    ├── StampGenerationError       (bad CAF, folio outside authorized range)
    ├── SigningError               (signing primitive or algorithm mismatch)
    ├── VerificationError          (digest mismatch, bad signature, missing block)
    ├── InvalidDocumentError       (document fails basic validation before stamping)
    │     └── InvalidRutError      (malformed or wrong check digit; also a ValueError)
    ├── HeterogeneousBatchError    (mixed types/emitters or repeated folios in one envelope)
    ├── TransportError             (network, timeout, 5xx — retryable)
    ├── ProtocolError              (unparseable authority response)
    ├── SessionError               (protocol stage invoked out of order)
    ├── AuthenticationError        (authority refused seed/token exchange)
    └── SubmissionRejectedError    (authority refused the envelope)

Only TRANSPORT_ERROR is retryable. Credential errors are fatal for the
identity, authority rejections are returned to the caller verbatim.
"""

from __future__ import annotations

from enum import Enum, unique
from typing import ClassVar


@unique
class ErrorCode(Enum):
    """Structured error codes for the failure track."""

    CREDENTIAL_ERROR = "CREDENTIAL_ERROR"
    """Key material missing, unreadable, wrong password or not RSA."""

    EXPIRED_CREDENTIAL = "EXPIRED_CREDENTIAL"
    """Signing attempted outside the certificate validity window."""

    STAMP_GENERATION_ERROR = "STAMP_GENERATION_ERROR"
    """Folio authorization missing, malformed, mismatched or out of range."""

    SIGNING_ERROR = "SIGNING_ERROR"
    """The signing primitive failed or the key does not fit the algorithm."""

    VERIFICATION_ERROR = "VERIFICATION_ERROR"
    """A signed document failed verification."""

    INVALID_DOCUMENT = "INVALID_DOCUMENT"
    """A document is malformed: bad RUT, missing receiver or reference."""

    HETEROGENEOUS_BATCH = "HETEROGENEOUS_BATCH"
    """Documents in one envelope do not share type, emitter or receiver, or repeat a folio."""

    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    """Network failure, timeout or server-side HTTP status."""

    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    """The authority answered with something we cannot parse."""

    SESSION_ERROR = "SESSION_ERROR"
    """A protocol stage was invoked out of order."""

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    """The authority returned a non-success status on seed or token."""

    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    """The authority returned a non-success status on upload."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Invalid or incomplete application settings."""

    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    """Anything not covered above."""

    @property
    def retryable(self) -> bool:
        """True when a caller may retry the failed stage unchanged."""
        return self is ErrorCode.TRANSPORT_ERROR


class DteError(Exception):
    """Base class for every error raised by the DTE pipeline."""

    error_code: ClassVar[ErrorCode] = ErrorCode.UNEXPECTED_ERROR


class CredentialError(DteError):
    error_code = ErrorCode.CREDENTIAL_ERROR


class ExpiredCredentialError(DteError):
    error_code = ErrorCode.EXPIRED_CREDENTIAL


class StampGenerationError(DteError):
    error_code = ErrorCode.STAMP_GENERATION_ERROR


class SigningError(DteError):
    error_code = ErrorCode.SIGNING_ERROR


@unique
class VerificationCause(Enum):
    DIGEST_MISMATCH = "digest-mismatch"
    SIGNATURE_INVALID = "signature-invalid"
    MISSING_SIGNATURE = "missing-signature"


class VerificationError(DteError):
    """Raised when a signature block does not verify; `cause` says why."""

    error_code = ErrorCode.VERIFICATION_ERROR

    def __init__(self, cause: VerificationCause, detail: str = "") -> None:
        self.cause = cause
        self.detail = detail
        super().__init__(f"{cause.value}: {detail}" if detail else cause.value)


class InvalidDocumentError(DteError):
    error_code = ErrorCode.INVALID_DOCUMENT


class InvalidRutError(InvalidDocumentError, ValueError):
    """A RUT that is malformed or whose check digit does not match."""


class HeterogeneousBatchError(DteError):
    error_code = ErrorCode.HETEROGENEOUS_BATCH


class TransportError(DteError):
    error_code = ErrorCode.TRANSPORT_ERROR


class ProtocolError(DteError):
    error_code = ErrorCode.PROTOCOL_ERROR


class SessionError(DteError):
    error_code = ErrorCode.SESSION_ERROR


class AuthorityRejection(DteError):
    """
    A non-success status returned by the tax authority.

    `code` is the authority's own status code (e.g. "01") and `message`
    its accompanying text, both kept verbatim.
    """

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"authority status {code}: {message}")


class AuthenticationError(AuthorityRejection):
    error_code = ErrorCode.AUTHENTICATION_ERROR


class SubmissionRejectedError(AuthorityRejection):
    error_code = ErrorCode.SUBMISSION_REJECTED
