"""
Configuration validation.

Structural checks run on every resolved DteConfig before it is handed
out.  All errors are collected so a broken file is fixed in one pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from dte_config.schema import DteConfig
from dte_kernel.domain import rut


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_configuration(config: DteConfig) -> ValidationResult:
    errors: list[str] = []

    endpoints = config.endpoints
    if endpoints.scheme not in ("http", "https"):
        errors.append(f"endpoints.scheme must be http or https, got {endpoints.scheme!r}")
    if not endpoints.host:
        errors.append("environment host is empty")
    for name in ("seed_path", "token_path", "upload_path", "status_path"):
        if not getattr(endpoints, name).startswith("/"):
            errors.append(f"endpoints.{name} must start with '/'")

    if not rut.is_valid(config.authority_rut):
        errors.append(f"authority.rut {config.authority_rut!r} is not a valid RUT")

    t = config.transmission
    if t.timeout_seconds <= 0:
        errors.append("transmission.timeout_seconds must be positive")
    if t.max_attempts < 1:
        errors.append("transmission.max_attempts must be at least 1")
    if t.backoff_base_ms < 0 or t.backoff_max_ms < t.backoff_base_ms:
        errors.append("transmission backoff must satisfy 0 <= backoff_base_ms <= backoff_max_ms")

    if config.token.effective_ttl_seconds <= 0:
        errors.append("token.refresh_margin_seconds must be shorter than token.ttl_minutes")

    p = config.polling
    if p.interval_seconds <= 0 or p.max_interval_seconds < p.interval_seconds:
        errors.append("polling intervals must satisfy 0 < interval_seconds <= max_interval_seconds")
    if p.default_timeout_seconds <= 0:
        errors.append("polling.default_timeout_seconds must be positive")

    if config.signature.require_trusted_chain and not config.signature.trust_anchors:
        errors.append("signature.require_trusted_chain needs at least one trust anchor")
    for anchor in config.signature.trust_anchors:
        if not anchor.is_file():
            errors.append(f"signature trust anchor not found: {anchor}")
    for crl in config.signature.crls:
        if not crl.is_file():
            errors.append(f"signature CRL not found: {crl}")

    if not 1 <= config.folios.alert_threshold_percent <= 100:
        errors.append("folios.alert_threshold_percent must be between 1 and 100")

    if not Decimal("0") <= config.tax.vat_rate < Decimal("1"):
        errors.append("tax.vat_rate must be a fraction in [0, 1)")

    if config.schema.path is not None and not config.schema.path.is_file():
        errors.append(f"schema.path not found: {config.schema.path}")

    return ValidationResult(errors=tuple(errors))
