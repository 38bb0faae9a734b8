"""
Credential codec.

Each provider's multi-field credential bundle is stored as one opaque string.
Two formats are understood, newest first:

- v2: base64 of a JSON object keyed by the provider's field names. Any
  printable value round-trips, including values containing ``:`` or ``|``.
- v1 (legacy): a raw delimiter join split on the FIRST separator
  (neoncrm ``orgId:apiKey``, blackbaud ``accessToken|subscriptionKey``), or
  the raw API key itself for single-key providers.

``decode`` never raises on malformed input. It logs the classified reason and
returns None; ``diagnose`` returns the reason instead.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import orjson

from donorsync.contracts import Provider
from donorsync.errors import CredentialError
from donorsync.normalize import safe_parse_int

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 10
MAX_ORG_ID_LENGTH = 50


class CredentialIssue(str, Enum):
    """Why a stored credential could not be decoded."""

    EMPTY_INPUT = "EMPTY_INPUT"
    MISSING_SEPARATOR = "MISSING_SEPARATOR"
    EMPTY_FIELD = "EMPTY_FIELD"
    SECRET_TOO_SHORT = "SECRET_TOO_SHORT"
    FIELD_TOO_LONG = "FIELD_TOO_LONG"
    UNDECODABLE = "UNDECODABLE"
    MISSING_FIELD = "MISSING_FIELD"


@dataclass(frozen=True)
class CredentialSchema:
    """Field layout of one provider's credential bundle."""

    required: tuple[str, ...]
    optional: tuple[str, ...] = ()
    legacy_separator: str | None = None  # None: legacy token is the raw single key
    legacy_fields: tuple[str, ...] = ()  # Empty: no legacy format
    integer_fields: tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    min_lengths: Mapping[str, int] = field(default_factory=dict)
    max_lengths: Mapping[str, int] = field(default_factory=dict)

    @property
    def fields(self) -> tuple[str, ...]:
        return self.required + self.optional


_SINGLE_KEY = CredentialSchema(
    required=("apiKey",),
    legacy_fields=("apiKey",),
    min_lengths={"apiKey": MIN_SECRET_LENGTH},
)

CREDENTIAL_SCHEMAS: dict[Provider, CredentialSchema] = {
    Provider.BLACKBAUD: CredentialSchema(
        required=("accessToken", "subscriptionKey"),
        optional=("refreshToken", "tokenExpiry", "environmentId"),
        legacy_separator="|",
        legacy_fields=("accessToken", "subscriptionKey"),
        integer_fields=("tokenExpiry",),
    ),
    Provider.SALESFORCE: CredentialSchema(
        required=("instanceUrl", "accessToken"),
        optional=("refreshToken", "tokenExpiry", "clientId", "clientSecret"),
        integer_fields=("tokenExpiry",),
    ),
    Provider.EVERYACTION: CredentialSchema(
        required=("applicationName", "apiKey"),
        optional=("databaseMode",),
        integer_fields=("databaseMode",),
        defaults={"databaseMode": 1},
        min_lengths={"apiKey": MIN_SECRET_LENGTH},
    ),
    Provider.NEONCRM: CredentialSchema(
        required=("orgId", "apiKey"),
        legacy_separator=":",
        legacy_fields=("orgId", "apiKey"),
        min_lengths={"apiKey": MIN_SECRET_LENGTH},
        max_lengths={"orgId": MAX_ORG_ID_LENGTH},
    ),
    Provider.BLOOMERANG: _SINGLE_KEY,
    Provider.DONORPERFECT: _SINGLE_KEY,
    Provider.VIRTUOUS: _SINGLE_KEY,
}


class _DecodeFailure(Exception):
    def __init__(self, issue: CredentialIssue, detail: str) -> None:
        super().__init__(detail)
        self.issue = issue


def _schema(provider: Provider | str) -> tuple[Provider, CredentialSchema]:
    p = Provider(provider)
    return p, CREDENTIAL_SCHEMAS[p]


def encode(provider: Provider | str, fields: Mapping[str, Any], *, legacy: bool = False) -> str:
    """
    Encode a credential bundle into its stored token.

    Args:
        provider: Provider the bundle belongs to.
        fields: Field values keyed by the provider's field names.
        legacy: Produce the v1 delimiter format (only where one exists).

    Raises:
        CredentialError: Unknown or missing required fields, or a legacy
            encoding that could not be decoded back unambiguously.
    """
    p, schema = _schema(provider)

    unknown = set(fields) - set(schema.fields)
    if unknown:
        raise CredentialError(f"Unknown credential fields for {p.value}: {sorted(unknown)}", provider=p.value)
    missing = [name for name in schema.required if not str(fields.get(name) or "").strip()]
    if missing:
        raise CredentialError(f"Missing credential fields for {p.value}: {missing}", provider=p.value)

    if legacy:
        if not schema.legacy_fields:
            raise CredentialError(f"{p.value} has no legacy credential format", provider=p.value)
        values = [str(fields[name]).strip() for name in schema.legacy_fields]
        if schema.legacy_separator is None:
            return values[0]
        # Only the last field may contain the separator (split is on the first one)
        if any(schema.legacy_separator in value for value in values[:-1]):
            raise CredentialError(
                f"Field contains legacy separator {schema.legacy_separator!r}; use v2 encoding",
                provider=p.value,
            )
        return schema.legacy_separator.join(values)

    payload = {name: fields[name] for name in schema.fields if fields.get(name) is not None}
    return base64.b64encode(orjson.dumps(payload)).decode("ascii")


def _normalize(schema: CredentialSchema, raw: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}

    for name in schema.required:
        value = raw.get(name)
        if value is None:
            raise _DecodeFailure(CredentialIssue.MISSING_FIELD, f"missing field {name}")
        text = str(value).strip()
        if not text:
            raise _DecodeFailure(CredentialIssue.EMPTY_FIELD, f"empty field {name}")
        result[name] = text

    for name in schema.optional:
        value = raw.get(name)
        if value is None or value == "":
            if name in schema.defaults:
                result[name] = schema.defaults[name]
            continue
        if name in schema.integer_fields:
            number = safe_parse_int(value)
            if number is not None:
                result[name] = number
            elif name in schema.defaults:
                result[name] = schema.defaults[name]
            continue
        result[name] = str(value).strip()

    for name, limit in schema.max_lengths.items():
        if len(result.get(name, "")) > limit:
            raise _DecodeFailure(CredentialIssue.FIELD_TOO_LONG, f"{name} appears too long")
    for name, limit in schema.min_lengths.items():
        if len(result.get(name, "")) < limit:
            raise _DecodeFailure(CredentialIssue.SECRET_TOO_SHORT, f"{name} appears too short")

    return result


def _decode_v2(token: str) -> dict[str, Any] | None:
    """Return the JSON object inside a v2 token, or None if it is not one."""
    try:
        decoded = base64.b64decode(token, validate=True)
        parsed = orjson.loads(decoded)
    except (binascii.Error, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _decode_legacy(schema: CredentialSchema, token: str) -> dict[str, Any]:
    if not schema.legacy_fields:
        raise _DecodeFailure(CredentialIssue.UNDECODABLE, "not a base64 JSON credential")

    if schema.legacy_separator is None:
        return {schema.legacy_fields[0]: token}

    index = token.find(schema.legacy_separator)
    if index == -1:
        raise _DecodeFailure(
            CredentialIssue.MISSING_SEPARATOR,
            f"missing {schema.legacy_separator!r} separator",
        )
    first, rest = token[:index], token[index + 1 :]
    return {schema.legacy_fields[0]: first, schema.legacy_fields[1]: rest}


def _decode(provider: Provider | str, token: str | None) -> tuple[dict[str, Any] | None, CredentialIssue | None]:
    p, schema = _schema(provider)
    trimmed = token.strip() if isinstance(token, str) else ""
    if not trimmed:
        return None, CredentialIssue.EMPTY_INPUT

    try:
        parsed = _decode_v2(trimmed)
        if parsed is not None and any(name in parsed for name in schema.fields):
            return _normalize(schema, parsed), None
        return _normalize(schema, _decode_legacy(schema, trimmed)), None
    except _DecodeFailure as failure:
        logger.warning(
            "Invalid stored credentials",
            extra={"provider": p.value, "issue": failure.issue.value, "detail": str(failure)},
        )
        return None, failure.issue


def decode(provider: Provider | str, token: str | None) -> dict[str, Any] | None:
    """Decode a stored token into credential fields, or None if malformed."""
    fields, _ = _decode(provider, token)
    return fields


def diagnose(provider: Provider | str, token: str | None) -> CredentialIssue | None:
    """Return why a stored token is malformed, or None if it decodes."""
    _, issue = _decode(provider, token)
    return issue


def redact_fields(fields: Mapping[str, Any]) -> dict[str, str]:
    """Masked view of credential fields, safe to print."""
    masked: dict[str, str] = {}
    for name, value in fields.items():
        text = str(value)
        if name in ("orgId", "instanceUrl", "applicationName", "databaseMode", "tokenExpiry"):
            masked[name] = text
        elif len(text) <= 8:
            masked[name] = "****"
        else:
            masked[name] = f"{text[:2]}****{text[-2:]}"
    return masked
