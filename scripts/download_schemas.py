#!/usr/bin/env python3
"""
Download the official SII XSD schemas.

The serializer validates against a bundled subset schema by default.  Point
``schema.path`` in the configuration at the downloaded EnvioDTE_v10.xsd to
validate against the authority's full schema instead.

Usage:
    python3 scripts/download_schemas.py                    # into ./schemas
    python3 scripts/download_schemas.py --dest /srv/sii/xsd
    python3 scripts/download_schemas.py --only DTE_v10 EnvioDTE_v10
"""

import argparse
import sys
from pathlib import Path

import requests

BASE_URL = "http://www.sii.cl/SiiDte"

SCHEMAS = (
    "DTE_v10",
    "EnvioDTE_v10",
    "SiiTypes_v10",
    "xmldsig_v10",
    "EnvioBOLETA_v11",
    "RespuestaDTE_v10",
    "ReciboDTE_v10",
)


def download(name: str, dest: Path, http: requests.Session, timeout: float) -> int:
    """Fetch one schema into dest.  Returns the size in bytes."""
    response = http.get(f"{BASE_URL}/{name}.xsd", timeout=timeout)
    response.raise_for_status()
    (dest / f"{name}.xsd").write_bytes(response.content)
    return len(response.content)


def main() -> int:
    parser = argparse.ArgumentParser(description="Download SII XSD schemas")
    parser.add_argument("--dest", type=Path, default=Path("schemas"), help="Target directory")
    parser.add_argument("--only", nargs="+", choices=SCHEMAS, help="Download only these schemas")
    parser.add_argument("--timeout", type=float, default=30.0, help="Per-request timeout in seconds")
    args = parser.parse_args()

    args.dest.mkdir(parents=True, exist_ok=True)
    names = args.only or SCHEMAS
    failed = 0

    with requests.Session() as http:
        for name in names:
            try:
                size = download(name, args.dest, http, args.timeout)
            except requests.RequestException as exc:
                failed += 1
                print(f"  FAILED  {name}: {exc}", file=sys.stderr)
                continue
            print(f"  OK      {name}.xsd ({size:,} bytes)")

    print()
    print(f"Downloaded {len(names) - failed} of {len(names)} schemas into {args.dest.resolve()}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
