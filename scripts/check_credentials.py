#!/usr/bin/env python3
"""
Encode a CRM credential bundle or diagnose a stored credential token.

Secrets are never echoed: diagnose prints only the decode issue or a masked
view of the decoded fields.

Usage:
    python -m scripts.check_credentials encode --provider neoncrm \\
        --field orgId=myorg --field apiKey=...
    python -m scripts.check_credentials diagnose --provider blackbaud < token.txt

Exit code 0 = ok, 1 = invalid input or undecodable token.
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import orjson

from donorsync.contracts import Provider
from donorsync.credentials import CREDENTIAL_SCHEMAS, decode, diagnose, encode, redact_fields
from donorsync.errors import CredentialError
from donorsync.logging_config import setup_logging


def parse_field_args(values: Sequence[str]) -> dict[str, str]:
    """Parse repeated ``name=value`` arguments (split on the first ``=``)."""
    fields: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected name=value, got {item!r}")
        fields[name.strip()] = value
    return fields


def load_fields_json(path: Path) -> dict[str, Any]:
    """Load credential fields from a JSON object file."""
    data = orjson.loads(path.read_bytes())
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


def cmd_encode(args: argparse.Namespace) -> int:
    try:
        fields: dict[str, Any] = {}
        if args.fields_json is not None:
            fields.update(load_fields_json(args.fields_json))
        fields.update(parse_field_args(args.field or []))
        token = encode(args.provider, fields, legacy=args.legacy)
    except (ValueError, CredentialError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(token)
    return 0


def cmd_diagnose(args: argparse.Namespace) -> int:
    token = args.token if args.token is not None else sys.stdin.read()
    issue = diagnose(args.provider, token)
    if issue is not None:
        print(f"INVALID: {issue.value}")
        return 1

    fields = decode(args.provider, token) or {}
    print("OK")
    for name, value in redact_fields(fields).items():
        print(f"  {name}: {value}")
    return 0


def cmd_schema(args: argparse.Namespace) -> int:
    schema = CREDENTIAL_SCHEMAS[Provider(args.provider)]
    print(f"required: {', '.join(schema.required)}")
    if schema.optional:
        print(f"optional: {', '.join(schema.optional)}")
    if schema.legacy_fields:
        layout = (schema.legacy_separator or "").join(schema.legacy_fields)
        print(f"legacy:   {layout}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Encode or diagnose stored CRM credentials.",
    )
    parser.add_argument("--verbose", action="store_true", help="Show decode warnings")
    providers = [p.value for p in Provider]
    sub = parser.add_subparsers(dest="command", required=True)

    enc = sub.add_parser("encode", help="Encode fields into a stored token")
    enc.add_argument("--provider", required=True, choices=providers)
    enc.add_argument("--field", action="append", help="Credential field as name=value")
    enc.add_argument("--fields-json", type=Path, default=None, help="JSON object of fields")
    enc.add_argument("--legacy", action="store_true", help="Use the legacy delimiter format")
    enc.set_defaults(func=cmd_encode)

    diag = sub.add_parser("diagnose", help="Check a stored token (read from stdin by default)")
    diag.add_argument("--provider", required=True, choices=providers)
    diag.add_argument("--token", default=None, help="Token value (prefer stdin)")
    diag.set_defaults(func=cmd_diagnose)

    schema = sub.add_parser("schema", help="Show a provider's credential fields")
    schema.add_argument("--provider", required=True, choices=providers)
    schema.set_defaults(func=cmd_schema)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else "ERROR", json_format=False, stream=sys.stderr)
    result: int = args.func(args)
    return result


if __name__ == "__main__":
    sys.exit(main())
