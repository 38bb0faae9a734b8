"""Vendor adapter contract and shared transport."""

from donorsync.adapters.base import Page, RawProviderRecord, VendorAdapter
from donorsync.adapters.http import VendorHttpClient, parse_retry_after

__all__ = [
    "Page",
    "RawProviderRecord",
    "VendorAdapter",
    "VendorHttpClient",
    "parse_retry_after",
]
