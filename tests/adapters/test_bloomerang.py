"""Tests for the Bloomerang adapter."""

from __future__ import annotations

import re
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from donorsync.adapters.base import RawProviderRecord
from donorsync.adapters.bloomerang import BLOOMERANG_BASE_URL, BloomerangAdapter
from donorsync.contracts import (
    Constituent,
    Donation,
    DonationStatus,
    DonationType,
    Provider,
    RecordKind,
)
from donorsync.errors import AuthError, ErrorKind, Ok, TransientError

CONSTITUENT: dict[str, Any] = {
    "Id": 101,
    "FirstName": " Ada ",
    "LastName": "Lovelace",
    "PrimaryEmail": {"Value": "ada@example.org"},
    "PrimaryPhone": {"Number": "555-0100"},
    "PrimaryAddress": {
        "Street": "12 Analytical Way",
        "City": "London",
        "State": "LDN",
        "PostalCode": "N1",
        "Country": "UK",
    },
    "DonationTotal": "1,250.00",
    "DonationCount": 4,
    "LargestTransaction": {"Amount": 500, "Date": "2023-06-01"},
    "LastTransaction": {"Amount": 100, "Date": "2024-01-15T00:00:00Z"},
    "FirstTransaction": {"Amount": 50, "Date": "01/05/2020"},
    "Type": "Individual",
    "EngagementLevel": None,
}

TRANSACTION: dict[str, Any] = {
    "Id": 9001,
    "AccountId": 101,
    "Amount": "75.00",
    "Date": "2024-02-01",
    "Method": "CreditCard",
    "Designations": [
        {
            "Type": "Donation",
            "Status": "Posted",
            "Campaign": {"Name": "Spring Appeal"},
            "Fund": {"Name": "General"},
            "Note": " thank you ",
        }
    ],
    "Receipted": True,
}


def raw(kind: RecordKind, data: dict[str, Any]) -> RawProviderRecord:
    return RawProviderRecord(Provider.BLOOMERANG, kind, data)


@pytest.fixture
def http() -> MagicMock:
    """Mock VendorHttpClient."""
    client = MagicMock()
    client.request = AsyncMock(return_value={"Total": 0, "Results": []})
    client.close = AsyncMock()
    return client


@pytest.fixture
def adapter(http: MagicMock) -> BloomerangAdapter:
    return BloomerangAdapter("bloomerang-key", client=http)


class TestConstruction:
    """Default transport wiring."""

    def test_default_client_sends_api_key_header(self) -> None:
        adapter = BloomerangAdapter("private-key-123")
        client = adapter._client
        assert client.provider == Provider.BLOOMERANG
        assert client._base_url == BLOOMERANG_BASE_URL
        assert client._headers["X-API-Key"] == "private-key-123"


class TestValidateCredentials:
    """validate_credentials returns an explicit result."""

    @pytest.mark.asyncio
    async def test_ok(self, adapter: BloomerangAdapter, http: MagicMock) -> None:
        result = await adapter.validate_credentials({"apiKey": "bloomerang-key"})

        assert isinstance(result, Ok)
        assert result.unwrap() is True
        http.request.assert_awaited_once_with("GET", "constituents", params={"take": 1})

    @pytest.mark.asyncio
    async def test_rejected(self, adapter: BloomerangAdapter, http: MagicMock) -> None:
        http.request.side_effect = AuthError("HTTP 401", provider="bloomerang")

        result = await adapter.validate_credentials({"apiKey": "bloomerang-key"})

        assert not result.ok
        assert result.kind == ErrorKind.AUTH  # type: ignore[union-attr]
        with pytest.raises(AuthError):
            result.unwrap()


class TestFetchPage:
    """Skip/take pagination."""

    @pytest.mark.asyncio
    async def test_full_page_has_more(self, adapter: BloomerangAdapter, http: MagicMock) -> None:
        http.request.return_value = {"Total": 5, "Results": [{"Id": 1}, {"Id": 2}]}

        page = (await adapter.fetch_page(RecordKind.CONSTITUENT, None, 2)).unwrap()

        assert page is not None
        assert [r.data["Id"] for r in page.records] == [1, 2]
        assert all(r.kind == RecordKind.CONSTITUENT for r in page.records)
        assert page.next_cursor == 2
        assert page.has_more is True
        http.request.assert_awaited_once_with(
            "GET", "constituents", params={"skip": 0, "take": 2}
        )

    @pytest.mark.asyncio
    async def test_last_page(self, adapter: BloomerangAdapter, http: MagicMock) -> None:
        http.request.return_value = {"Total": 5, "Results": [{"Id": 5}]}

        page = (await adapter.fetch_page(RecordKind.DONATION, 4, 2)).unwrap()

        assert page is not None
        assert page.next_cursor == 5
        assert page.has_more is False
        assert http.request.call_args.args == ("GET", "transactions")

    @pytest.mark.asyncio
    async def test_full_page_at_total_stops(
        self, adapter: BloomerangAdapter, http: MagicMock
    ) -> None:
        http.request.return_value = {"Total": 4, "Results": [{"Id": 3}, {"Id": 4}]}
        page = (await adapter.fetch_page(RecordKind.CONSTITUENT, 2, 2)).unwrap()
        assert page is not None
        assert page.has_more is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("total", [None, "n/a"])
    async def test_missing_total_pages_by_page_length(
        self, adapter: BloomerangAdapter, http: MagicMock, total: object
    ) -> None:
        """Without a usable Total a full page keeps paging and a short page stops."""
        body: dict[str, object] = {"Results": [{"Id": 1}, {"Id": 2}]}
        if total is not None:
            body["Total"] = total
        http.request.return_value = body

        full = (await adapter.fetch_page(RecordKind.CONSTITUENT, None, 2)).unwrap()
        assert full is not None
        assert full.has_more is True

        http.request.return_value = {**body, "Results": [{"Id": 3}]}
        short = (await adapter.fetch_page(RecordKind.CONSTITUENT, 2, 2)).unwrap()
        assert short is not None
        assert short.has_more is False

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_validation_error(
        self, adapter: BloomerangAdapter, http: MagicMock
    ) -> None:
        http.request.return_value = {"error": "maintenance"}

        result = await adapter.fetch_page(RecordKind.CONSTITUENT, None, 50)

        assert not result.ok
        assert result.kind == ErrorKind.VALIDATION  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_transport_error_returned(
        self, adapter: BloomerangAdapter, http: MagicMock
    ) -> None:
        http.request.side_effect = TransientError("HTTP 503")

        result = await adapter.fetch_page(RecordKind.CONSTITUENT, None, 50)

        assert not result.ok
        assert result.kind == ErrorKind.TRANSIENT  # type: ignore[union-attr]


class TestMapConstituent:
    """Constituent mapping."""

    def test_maps_fields(self, adapter: BloomerangAdapter) -> None:
        constituent = adapter.map_constituent(raw(RecordKind.CONSTITUENT, CONSTITUENT))

        assert constituent.external_id == "101"
        assert constituent.provider == Provider.BLOOMERANG
        assert constituent.first_name == "Ada"
        assert constituent.full_name == "Ada Lovelace"
        assert constituent.email == "ada@example.org"
        assert constituent.phone == "555-0100"
        assert constituent.city == "London"
        assert constituent.zip_code == "N1"
        assert constituent.giving.lifetime_total == 1250.0
        assert constituent.giving.largest_gift == 500.0
        assert constituent.giving.last_gift_date == "2024-01-15"
        assert constituent.giving.first_gift_date == "2020-01-05"
        assert constituent.giving.gift_count == 4

    def test_unmapped_fields_namespaced(self, adapter: BloomerangAdapter) -> None:
        constituent = adapter.map_constituent(raw(RecordKind.CONSTITUENT, CONSTITUENT))
        assert constituent.custom_fields == {"bloomerang_Type": "Individual"}

    def test_sparse_record(self, adapter: BloomerangAdapter) -> None:
        constituent = adapter.map_constituent(
            raw(RecordKind.CONSTITUENT, {"FullName": "Analytical Society"})
        )

        assert re.fullmatch(r"bloomerang-unknown-\d+-[0-9a-z]{6}", constituent.external_id)
        assert constituent.full_name == "Analytical Society"
        assert constituent.email is None
        assert constituent.giving.lifetime_total is None


class TestMapDonation:
    """Transaction mapping."""

    def test_maps_fields(self, adapter: BloomerangAdapter) -> None:
        donation = adapter.map_donation(raw(RecordKind.DONATION, TRANSACTION))

        assert donation.external_id == "9001"
        assert donation.constituent_external_id == "101"
        assert donation.amount == 75.0
        assert donation.donation_date == "2024-02-01"
        assert donation.donation_type == DonationType.ONE_TIME
        assert donation.status == DonationStatus.COMPLETED
        assert donation.campaign_name == "Spring Appeal"
        assert donation.fund_name == "General"
        assert donation.payment_method == "CreditCard"
        assert donation.notes == "thank you"
        assert donation.custom_fields == {"bloomerang_Receipted": True}

    def test_garbage_amount_becomes_zero(self, adapter: BloomerangAdapter) -> None:
        """A bad amount normalizes to 0; the record is neither dropped nor rejected."""
        data = dict(TRANSACTION, Amount="abc")
        donation = adapter.map_donation(raw(RecordKind.DONATION, data))
        assert donation.amount == 0
        assert donation.external_id == "9001"

    def test_no_designation(self, adapter: BloomerangAdapter) -> None:
        donation = adapter.map_donation(
            raw(RecordKind.DONATION, {"Id": 1, "AccountId": 2, "Amount": 10})
        )
        assert donation.donation_type == DonationType.ONE_TIME
        assert donation.status == DonationStatus.COMPLETED
        assert donation.campaign_name is None


class TestAdapterBoundary:
    """Dispatch and lifecycle."""

    def test_map_record_dispatches_on_kind(self, adapter: BloomerangAdapter) -> None:
        assert isinstance(adapter.map_record(raw(RecordKind.CONSTITUENT, CONSTITUENT)), Constituent)
        assert isinstance(adapter.map_record(raw(RecordKind.DONATION, TRANSACTION)), Donation)

    def test_record_id(self, adapter: BloomerangAdapter) -> None:
        assert adapter.record_id(raw(RecordKind.DONATION, TRANSACTION)) == "9001"
        assert adapter.record_id(raw(RecordKind.DONATION, {})) is None

    @pytest.mark.asyncio
    async def test_close(self, adapter: BloomerangAdapter, http: MagicMock) -> None:
        await adapter.close()
        http.close.assert_awaited_once()
