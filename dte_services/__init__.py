"""
dte_services -- orchestration over the DTE kernel.

Responsibility:
    Builds kernel services from a DteConfig and runs the issuance pipeline
    with explicit transaction boundaries.  External callers import from
    here.

Architecture position:
    Services.  Dependency direction:
        dte_services -> dte_kernel   (allowed)
        dte_services -> dte_config   (allowed)
        dte_kernel   -> dte_services (FORBIDDEN)
"""

from dte_services.issuance_service import (
    DocumentIssuanceService,
    build_signer,
    build_token_provider,
    load_certificates,
    load_crls,
)

__all__ = [
    "DocumentIssuanceService",
    "build_signer",
    "build_token_provider",
    "load_certificates",
    "load_crls",
]
