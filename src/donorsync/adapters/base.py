"""
Vendor adapter contract.

Adapters translate one vendor's wire format into tagged ``RawProviderRecord``
values and map those into canonical Constituent/Donation models. Vendor field
names never leak past this boundary. Calls that can fail return an explicit
``AdapterResult`` (``Ok``/``Err``) instead of raising or returning None.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from donorsync.contracts import Constituent, Donation, Provider, RecordKind
from donorsync.errors import AdapterResult


@dataclass(frozen=True)
class RawProviderRecord:
    """One vendor record, tagged with its provider and kind."""

    provider: Provider
    kind: RecordKind
    data: Mapping[str, Any]


@dataclass(frozen=True)
class Page:
    """
    One fetched page.

    ``next_cursor`` is whatever the adapter needs to fetch the following page
    (offset, page number, next link, last seen ID). ``max_id`` is set by
    ID-cursor adapters so the stream can verify the cursor advanced.
    """

    records: Sequence[RawProviderRecord] = field(default_factory=tuple)
    next_cursor: Any = None
    has_more: bool = False
    max_id: int | None = None


class VendorAdapter(ABC):
    """Base class for the per-vendor adapters."""

    provider: Provider
    # Vendor pages by a monotonically increasing ID instead of an offset
    id_cursor: bool = False

    @abstractmethod
    async def validate_credentials(self, credentials: Mapping[str, Any]) -> AdapterResult[bool]:
        """Check credentials against the vendor (cheap authenticated call)."""

    @abstractmethod
    async def fetch_page(
        self,
        kind: RecordKind,
        cursor: Any,
        page_size: int,
    ) -> AdapterResult[Page]:
        """Fetch one page of ``kind`` records starting at ``cursor``."""

    @abstractmethod
    def map_constituent(self, raw: RawProviderRecord) -> Constituent:
        """Map a raw constituent record into the canonical model."""

    @abstractmethod
    def map_donation(self, raw: RawProviderRecord) -> Donation:
        """Map a raw donation record into the canonical model."""

    def record_id(self, raw: RawProviderRecord) -> str | None:
        """Vendor id of a raw record for error reports, if known."""
        return None

    def map_record(self, raw: RawProviderRecord) -> Constituent | Donation:
        if raw.kind == RecordKind.CONSTITUENT:
            return self.map_constituent(raw)
        return self.map_donation(raw)

    async def close(self) -> None:
        """Release transport resources."""
        return None
