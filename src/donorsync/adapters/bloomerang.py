"""
Bloomerang adapter (REST API v2, single API key, skip/take pagination).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from donorsync.adapters.base import Page, RawProviderRecord, VendorAdapter
from donorsync.adapters.http import VendorHttpClient
from donorsync.config import SyncConfig
from donorsync.contracts import Constituent, Donation, GivingSummary, Provider, RecordKind
from donorsync.errors import AdapterResult, Err, Ok, SyncEngineError, ValidationError
from donorsync.normalize import (
    build_full_name,
    clean_string,
    map_donation_status,
    map_donation_type,
    namespace_custom_fields,
    parse_amount,
    safe_external_id,
    safe_parse_date,
    safe_parse_int,
    safe_parse_positive_number,
)

logger = logging.getLogger(__name__)

BLOOMERANG_BASE_URL = "https://api.bloomerang.co/v2"

_ENDPOINTS = {
    RecordKind.CONSTITUENT: "constituents",
    RecordKind.DONATION: "transactions",
}

# Vendor fields mapped onto canonical fields; everything else goes to custom_fields
_CONSTITUENT_FIELDS = frozenset(
    {
        "Id",
        "FirstName",
        "LastName",
        "FullName",
        "PrimaryEmail",
        "PrimaryPhone",
        "PrimaryAddress",
        "FirstTransaction",
        "LastTransaction",
        "LargestTransaction",
        "DonationTotal",
        "DonationCount",
    }
)
_TRANSACTION_FIELDS = frozenset({"Id", "AccountId", "Amount", "Date", "Method", "Designations"})


def _nested(data: Mapping[str, Any], key: str, field: str) -> Any:
    value = data.get(key)
    return value.get(field) if isinstance(value, Mapping) else None


class BloomerangAdapter(VendorAdapter):
    """Reads constituents and transactions from Bloomerang."""

    provider = Provider.BLOOMERANG

    def __init__(
        self,
        api_key: str,
        *,
        client: VendorHttpClient | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self._client = client or VendorHttpClient(
            self.provider,
            BLOOMERANG_BASE_URL,
            config=config,
            headers={"X-API-Key": api_key, "Accept": "application/json"},
        )

    async def validate_credentials(self, credentials: Mapping[str, Any]) -> AdapterResult[bool]:
        try:
            await self._client.request("GET", "constituents", params={"take": 1})
        except SyncEngineError as e:
            return Err(e)
        return Ok(True)

    async def fetch_page(self, kind: RecordKind, cursor: Any, page_size: int) -> AdapterResult[Page]:
        skip = int(cursor or 0)
        try:
            data = await self._client.request(
                "GET", _ENDPOINTS[kind], params={"skip": skip, "take": page_size}
            )
        except SyncEngineError as e:
            return Err(e)

        if not isinstance(data, Mapping) or not isinstance(data.get("Results"), list):
            return Err(
                ValidationError("Unexpected Bloomerang list response", provider=self.provider.value)
            )

        results = data["Results"]
        total = safe_parse_int(data.get("Total"))
        next_skip = skip + len(results)
        # Without a usable Total, only a short page ends the listing
        has_more = len(results) == page_size and (total is None or next_skip < total)
        return Ok(
            Page(
                records=tuple(RawProviderRecord(self.provider, kind, item) for item in results),
                next_cursor=next_skip,
                has_more=has_more,
            )
        )

    def record_id(self, raw: RawProviderRecord) -> str | None:
        value = raw.data.get("Id")
        return None if value is None else str(value)

    def map_constituent(self, raw: RawProviderRecord) -> Constituent:
        data = raw.data
        first_name = clean_string(data.get("FirstName"))
        last_name = clean_string(data.get("LastName"))
        address = data.get("PrimaryAddress")
        if not isinstance(address, Mapping):
            address = {}

        return Constituent(
            external_id=safe_external_id(data.get("Id"), "bloomerang"),
            provider=self.provider,
            first_name=first_name,
            last_name=last_name,
            full_name=build_full_name(first_name, last_name, data.get("FullName")),
            email=clean_string(_nested(data, "PrimaryEmail", "Value")),
            phone=clean_string(_nested(data, "PrimaryPhone", "Number")),
            street_address=clean_string(address.get("Street")),
            city=clean_string(address.get("City")),
            state=clean_string(address.get("State")),
            zip_code=clean_string(address.get("PostalCode")),
            country=clean_string(address.get("Country")),
            giving=GivingSummary(
                lifetime_total=safe_parse_positive_number(data.get("DonationTotal")),
                largest_gift=safe_parse_positive_number(_nested(data, "LargestTransaction", "Amount")),
                last_gift_amount=safe_parse_positive_number(_nested(data, "LastTransaction", "Amount")),
                last_gift_date=safe_parse_date(_nested(data, "LastTransaction", "Date")),
                first_gift_amount=safe_parse_positive_number(_nested(data, "FirstTransaction", "Amount")),
                first_gift_date=safe_parse_date(_nested(data, "FirstTransaction", "Date")),
                gift_count=safe_parse_int(data.get("DonationCount")),
            ),
            custom_fields=namespace_custom_fields(
                self.provider,
                {k: v for k, v in data.items() if k not in _CONSTITUENT_FIELDS},
            ),
        )

    def map_donation(self, raw: RawProviderRecord) -> Donation:
        data = raw.data
        designations = data.get("Designations") or []
        designation = designations[0] if designations and isinstance(designations[0], Mapping) else {}

        return Donation(
            external_id=safe_external_id(data.get("Id"), "bloomerang-txn"),
            provider=self.provider,
            constituent_external_id=safe_external_id(data.get("AccountId"), "bloomerang"),
            amount=parse_amount(data.get("Amount")),
            donation_date=safe_parse_date(data.get("Date")),
            donation_type=map_donation_type(designation.get("Type")),
            status=map_donation_status(designation.get("Status") or "completed"),
            campaign_name=clean_string(_nested(designation, "Campaign", "Name")),
            fund_name=clean_string(_nested(designation, "Fund", "Name")),
            payment_method=clean_string(data.get("Method")),
            notes=clean_string(designation.get("Note")),
            custom_fields=namespace_custom_fields(
                self.provider,
                {k: v for k, v in data.items() if k not in _TRANSACTION_FIELDS},
            ),
        )

    async def close(self) -> None:
        await self._client.close()
