"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets (key passwords) out of logs and source control

Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated via env_nested_delimiter="__", so
SIGNING__PKCS12_PATH maps to signing.pkcs12_path, EMITTER__RUT to
emitter.rut, and so on. Invalid settings fail at startup, never at
first use.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sii_dte.domain import rut
from sii_dte.domain.models import DigestAlgorithm

# Resolve the .env file relative to the project root (two levels above this file).
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"

_CERTIFICATION_HOST = "https://maullin.sii.cl"


def _valid_rut(value: str) -> str:
    if not rut.is_valid(value):
        raise ValueError(f"Invalid RUT (bad format or check digit): {value!r}")
    return rut.normalize(value)


class SigningSettings(BaseModel):
    """
    Signing identity: a PKCS#12 container, or a PEM certificate + key pair.

    The PKCS#12 container wins when both are given.
    """

    pkcs12_path: Path | None = Field(default=None, description="PKCS#12 (.pfx/.p12) container")
    certificate_path: Path | None = Field(default=None, description="PEM or DER certificate")
    private_key_path: Path | None = Field(default=None, description="PEM private key")
    password: SecretStr | None = Field(default=None, description="Container or key password")
    signer_rut: str | None = Field(
        default=None, description="Signer RUT; defaults to the certificate subject"
    )
    digest_algorithm: Literal["sha1", "sha256"] = Field(
        default="sha1", description="Digest for XML signatures and stamps"
    )

    @field_validator("signer_rut")
    @classmethod
    def validate_signer_rut(cls, value: str | None) -> str | None:
        return None if value is None else _valid_rut(value)

    @model_validator(mode="after")
    def require_key_material(self) -> SigningSettings:
        if self.pkcs12_path is None and (
            self.certificate_path is None or self.private_key_path is None
        ):
            raise ValueError(
                "Set SIGNING__PKCS12_PATH or both SIGNING__CERTIFICATE_PATH "
                "and SIGNING__PRIVATE_KEY_PATH"
            )
        return self

    @property
    def algorithm(self) -> DigestAlgorithm:
        return DigestAlgorithm(self.digest_algorithm)

    def password_value(self) -> str | None:
        return self.password.get_secret_value() if self.password else None


class AuthoritySettings(BaseModel):
    """Tax authority endpoints. Defaults point at the certification environment."""

    seed_url: str = Field(default=f"{_CERTIFICATION_HOST}/DTEWS/CrSeed.jws")
    token_url: str = Field(default=f"{_CERTIFICATION_HOST}/DTEWS/GetTokenFromSeed.jws")
    upload_url: str = Field(default=f"{_CERTIFICATION_HOST}/cgi_dte/UPL/DTEUpload")
    status_url: str = Field(default=f"{_CERTIFICATION_HOST}/DTEWS/QueryEstUp.jws")
    document_status_url: str = Field(default=f"{_CERTIFICATION_HOST}/DTEWS/QueryEstDte.jws")
    authority_rut: str = Field(default="60803000-K", description="Receiver of receipt envelopes")
    timeout_seconds: int = Field(default=30, ge=1, le=120)

    @field_validator("authority_rut")
    @classmethod
    def validate_authority_rut(cls, value: str) -> str:
        return _valid_rut(value)


class EmitterSettings(BaseModel):
    """The company issuing documents and its authority resolution."""

    rut: str = Field(description="Emitter RUT")
    resolution_date: date = Field(description="Date of the authorizing resolution")
    resolution_number: int = Field(ge=0, description="Resolution number (0 in certification)")

    @field_validator("rut")
    @classmethod
    def validate_rut(cls, value: str) -> str:
        return _valid_rut(value)


class CafSettings(BaseModel):
    directory: Path = Field(description="Directory holding CAF XML files")
    authority_public_key_path: Path | None = Field(
        default=None, description="PEM key used to verify CAF authority signatures"
    )


class RetrySettings(BaseModel):
    attempts: int = Field(default=3, ge=1, le=10, description="Seed/token attempts")
    backoff_seconds: float = Field(
        default=1.0, ge=0, le=60, description="Initial wait between attempts, doubled each time"
    )


class PollerSettings(BaseModel):
    interval_seconds: int = Field(default=60, ge=5, description="Status polling interval")


class ServerSettings(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    signing: SigningSettings
    emitter: EmitterSettings
    caf: CafSettings
    authority: AuthoritySettings = Field(default_factory=lambda: AuthoritySettings())
    retry: RetrySettings = Field(default_factory=lambda: RetrySettings())
    poller: PollerSettings = Field(default_factory=lambda: PollerSettings())
    server: ServerSettings = Field(default_factory=lambda: ServerSettings())

    log_level: str = Field(default="INFO")
