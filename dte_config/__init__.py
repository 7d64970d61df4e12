"""
dte_config -- single public entrypoint for pipeline configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.  Returns a frozen ``DteConfig`` for
    one SII environment.

Architecture position:
    Configuration -- sits above ``dte_kernel`` and below ``dte_services``.
    Kernel services receive plain settings objects; they never import
    this package.

Invariants enforced:
    - Single entrypoint: all runtime config flows through get_active_config().
    - Every returned DteConfig has passed validate_configuration().
    - Environment selection: explicit argument, then the DTE_ENVIRONMENT
      variable, then the file's default_environment.

Failure modes:
    - ``FileNotFoundError`` -- configuration file missing.
    - ``ValueError`` -- unknown environment or validation failures.

Audit relevance:
    Every successful call emits a ``DTE_CONFIG_TRACE`` log entry with the
    config_id, version, environment, endpoint host and checksum, tying each
    submission to the exact settings that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dte_config.loader import load_yaml_file, parse_config, parse_environment
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
from dte_config.validator import validate_configuration

_logger = logging.getLogger("dte_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

ENVIRONMENT_VARIABLE = "DTE_ENVIRONMENT"


def get_active_config(
    environment: str | Environment | None = None,
    config_path: Path | None = None,
) -> DteConfig:
    """The ONLY public configuration entrypoint.

    Args:
        environment: certification or production.  Defaults to the
            DTE_ENVIRONMENT variable, then the file's default_environment.
        config_path: Override path to the YAML file.  Defaults to
            dte_config/sets/default.yaml.

    Returns:
        DteConfig for the selected environment.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If the environment is unknown or validation fails.
    """
    path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    data = load_yaml_file(path)

    selected = (
        environment
        or os.environ.get(ENVIRONMENT_VARIABLE)
        or data.get("default_environment")
        or Environment.CERTIFICATION.value
    )
    config = parse_config(data, parse_environment(selected), path.parent)

    validation = validate_configuration(config)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )

    _logger.info(
        "DTE_CONFIG_TRACE",
        extra={
            "trace_type": "DTE_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "environment": config.environment.value,
            "endpoint_host": config.endpoints.host,
            "checksum": config.checksum,
            "max_attempts": config.transmission.max_attempts,
            "schema_path": str(config.schema.path) if config.schema.path else "bundled",
        },
    )

    return config


__all__ = [
    "DteConfig",
    "ENVIRONMENT_VARIABLE",
    "EndpointSet",
    "Environment",
    "FolioSettings",
    "PollingSettings",
    "SchemaSettings",
    "SignatureSettings",
    "TaxSettings",
    "TokenSettings",
    "TransmissionSettings",
    "get_active_config",
]
