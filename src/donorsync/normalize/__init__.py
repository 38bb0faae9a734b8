"""Normalization helpers used by vendor mappers."""

from donorsync.normalize.parsing import (
    build_full_name,
    clean_string,
    is_valid_string,
    map_donation_status,
    map_donation_type,
    namespace_custom_fields,
    parse_amount,
    safe_external_id,
    safe_parse_date,
    safe_parse_int,
    safe_parse_number,
    safe_parse_positive_number,
    truncate,
)

__all__ = [
    "build_full_name",
    "clean_string",
    "is_valid_string",
    "map_donation_status",
    "map_donation_type",
    "namespace_custom_fields",
    "parse_amount",
    "safe_external_id",
    "safe_parse_date",
    "safe_parse_int",
    "safe_parse_number",
    "safe_parse_positive_number",
    "truncate",
]
