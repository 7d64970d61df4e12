"""
DTE Kernel - electronic tax document issuance for the Chilean SII.

- Gapless, row-locked folio allocation from authorized CAF ranges
- Document building with all-violations validation and single-point rounding
- Canonical (C14N) XML serialization validated against the DTE schema
- XML-DSig enveloped signatures with tenant-scoped credentials
- Token-authenticated upload with bounded retry and an append-only attempt log
- Idempotent processing of asynchronous authority verdicts
"""

__version__ = "0.1.0"
