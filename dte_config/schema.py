"""
DteConfig schema.

Frozen dataclasses the YAML configuration set is parsed into.  One
DteConfig describes a single environment (certification or production);
the environment-independent sections are shared by both.

Key distinction:
  YAML configuration set = source artifact (human-authored, versioned)
  DteConfig              = runtime artifact (validated, frozen)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path


class Environment(str, Enum):
    """SII environments.  Certification is the authority's test bench."""

    CERTIFICATION = "certification"
    PRODUCTION = "production"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EndpointSet:
    """Authority endpoints for one environment."""

    host: str
    seed_path: str
    token_path: str
    upload_path: str
    status_path: str
    scheme: str = "https"

    def url(self, path: str) -> str:
        return f"{self.scheme}://{self.host}{path}"

    @property
    def seed_url(self) -> str:
        return self.url(self.seed_path)

    @property
    def token_url(self) -> str:
        return self.url(self.token_path)

    @property
    def upload_url(self) -> str:
        return self.url(self.upload_path)

    @property
    def status_url(self) -> str:
        return self.url(self.status_path)


# ---------------------------------------------------------------------------
# Behavior settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransmissionSettings:
    """
    HTTP behavior of the transmission client.

    timeout_seconds bounds each request; the backoff between attempts is
    separate and grows as backoff_base_ms * 2 ** (attempt - 1), capped at
    backoff_max_ms.
    """

    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    user_agent: str = "dte-kernel/0.1"

    def backoff_seconds(self, attempt: int) -> float:
        delay_ms = min(self.backoff_base_ms * 2 ** (attempt - 1), self.backoff_max_ms)
        return delay_ms / 1000.0


@dataclass(frozen=True)
class TokenSettings:
    ttl_minutes: int = 60
    refresh_margin_seconds: int = 300

    @property
    def effective_ttl_seconds(self) -> int:
        return self.ttl_minutes * 60 - self.refresh_margin_seconds


@dataclass(frozen=True)
class PollingSettings:
    interval_seconds: float = 30.0
    max_interval_seconds: float = 300.0
    default_timeout_seconds: float = 600.0


@dataclass(frozen=True)
class SignatureSettings:
    """
    Certificate policy.

    When require_trusted_chain is set, the top certificate of every signing
    chain must be one of trust_anchors (PEM files) or be issued by one.
    Certificates listed in any of the crls (PEM revocation lists) are
    refused.
    """

    require_trusted_chain: bool = False
    trust_anchors: tuple[Path, ...] = ()
    crls: tuple[Path, ...] = ()


@dataclass(frozen=True)
class FolioSettings:
    alert_threshold_percent: int = 80


@dataclass(frozen=True)
class TaxSettings:
    vat_rate: Decimal = Decimal("0.19")


@dataclass(frozen=True)
class SchemaSettings:
    """XSD used by the serializer.  path=None selects the bundled schema."""

    path: Path | None = None
    validate: bool = True


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DteConfig:
    """
    Resolved configuration for one environment.

    checksum is the SHA-256 of the source YAML document, so two processes
    with the same checksum run with identical settings.
    """

    config_id: str
    version: int
    environment: Environment
    endpoints: EndpointSet
    authority_rut: str
    transmission: TransmissionSettings = field(default_factory=TransmissionSettings)
    token: TokenSettings = field(default_factory=TokenSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    signature: SignatureSettings = field(default_factory=SignatureSettings)
    folios: FolioSettings = field(default_factory=FolioSettings)
    tax: TaxSettings = field(default_factory=TaxSettings)
    schema: SchemaSettings = field(default_factory=SchemaSettings)
    checksum: str = ""
