"""
Configuration Loader (``dte_config.loader``).

Responsibility
--------------
Loads the YAML configuration set and parses it into the frozen
``dte_config.schema`` dataclasses.  Runtime callers go through
``dte_config.get_active_config()``, never through this module.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown environment or bad numeric value  -> ``ValueError``.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from dte_config.schema import (
    DteConfig,
    EndpointSet,
    Environment,
    FolioSettings,
    PollingSettings,
    SchemaSettings,
    SignatureSettings,
    TaxSettings,
    TokenSettings,
    TransmissionSettings,
)
from dte_kernel.utils.hashing import hash_payload


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of a parsed configuration document."""
    return hash_payload(data)


def parse_environment(value: str | Environment) -> Environment:
    if isinstance(value, Environment):
        return value
    try:
        return Environment(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown environment {value!r}; expected one of "
            f"{', '.join(e.value for e in Environment)}"
        ) from None


def parse_endpoints(host_data: dict[str, Any], paths: dict[str, Any]) -> EndpointSet:
    return EndpointSet(
        host=host_data["host"],
        scheme=host_data.get("scheme", "https"),
        seed_path=paths["seed_path"],
        token_path=paths["token_path"],
        upload_path=paths["upload_path"],
        status_path=paths["status_path"],
    )


def parse_transmission(data: dict[str, Any]) -> TransmissionSettings:
    return TransmissionSettings(
        timeout_seconds=float(data.get("timeout_seconds", 30)),
        max_attempts=int(data.get("max_attempts", 3)),
        backoff_base_ms=int(data.get("backoff_base_ms", 1000)),
        backoff_max_ms=int(data.get("backoff_max_ms", 30000)),
        user_agent=data.get("user_agent", "dte-kernel/0.1"),
    )


def parse_token(data: dict[str, Any]) -> TokenSettings:
    return TokenSettings(
        ttl_minutes=int(data.get("ttl_minutes", 60)),
        refresh_margin_seconds=int(data.get("refresh_margin_seconds", 300)),
    )


def parse_polling(data: dict[str, Any]) -> PollingSettings:
    return PollingSettings(
        interval_seconds=float(data.get("interval_seconds", 30)),
        max_interval_seconds=float(data.get("max_interval_seconds", 300)),
        default_timeout_seconds=float(data.get("default_timeout_seconds", 600)),
    )


def parse_signature(data: dict[str, Any], base_dir: Path) -> SignatureSettings:
    anchors = tuple(_resolve(base_dir, p) for p in data.get("trust_anchors") or ())
    crls = tuple(_resolve(base_dir, p) for p in data.get("crls") or ())
    return SignatureSettings(
        require_trusted_chain=bool(data.get("require_trusted_chain", False)),
        trust_anchors=anchors,
        crls=crls,
    )


def parse_schema(data: dict[str, Any], base_dir: Path) -> SchemaSettings:
    path = data.get("path")
    return SchemaSettings(
        path=_resolve(base_dir, path) if path else None,
        validate=bool(data.get("validate", True)),
    )


def _resolve(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base_dir / path)


def parse_config(
    data: dict[str, Any],
    environment: Environment,
    base_dir: Path,
) -> DteConfig:
    """
    Build the DteConfig for one environment from a parsed YAML document.

    Raises:
        KeyError: If a required key is missing.
        ValueError: If the environment has no host entry.
    """
    hosts = data["environments"]
    if environment.value not in hosts:
        raise ValueError(f"Environment {environment.value!r} is not configured")

    return DteConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        environment=environment,
        endpoints=parse_endpoints(hosts[environment.value], data["endpoints"]),
        authority_rut=data["authority"]["rut"],
        transmission=parse_transmission(data.get("transmission") or {}),
        token=parse_token(data.get("token") or {}),
        polling=parse_polling(data.get("polling") or {}),
        signature=parse_signature(data.get("signature") or {}, base_dir),
        folios=FolioSettings(
            alert_threshold_percent=int((data.get("folios") or {}).get("alert_threshold_percent", 80)),
        ),
        tax=TaxSettings(
            vat_rate=Decimal(str((data.get("tax") or {}).get("vat_rate", "0.19"))),
        ),
        schema=parse_schema(data.get("schema") or {}, base_dir),
        checksum=compute_checksum(data),
    )
