"""
Canonical data contracts for DonorSync.

These are the provider-neutral schemas every vendor adapter maps into.
Identity of a record is ``(provider, external_id)``; the local storage id is
assigned by the persistence layer and never appears here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Provider(str, Enum):
    """Supported fundraising CRM vendors."""

    BLACKBAUD = "blackbaud"
    BLOOMERANG = "bloomerang"
    DONORPERFECT = "donorperfect"
    EVERYACTION = "everyaction"
    NEONCRM = "neoncrm"
    SALESFORCE = "salesforce"
    VIRTUOUS = "virtuous"


class DonationType(str, Enum):
    """Controlled vocabulary for donation types."""

    ONE_TIME = "one-time"
    RECURRING = "recurring"
    PLEDGE = "pledge"
    PLEDGE_PAYMENT = "pledge-payment"
    GRANT = "grant"
    IN_KIND = "in-kind"
    STOCK = "stock"
    OTHER = "other"


class DonationStatus(str, Enum):
    """Controlled vocabulary for donation statuses."""

    COMPLETED = "completed"
    PENDING = "pending"
    DECLINED = "declined"
    REFUNDED = "refunded"
    REVERSED = "reversed"
    UNKNOWN = "unknown"


class RecordKind(str, Enum):
    """Kind of record being synced."""

    CONSTITUENT = "constituent"
    DONATION = "donation"


class _Contract(BaseModel):
    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json"))


class GivingSummary(_Contract):
    """Per-constituent giving aggregates. Every field is independently optional."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    lifetime_total: float | None = Field(default=None, ge=0)
    largest_gift: float | None = Field(default=None, ge=0)
    last_gift_amount: float | None = Field(default=None, ge=0)
    last_gift_date: str | None = None
    first_gift_amount: float | None = Field(default=None, ge=0)
    first_gift_date: str | None = None
    gift_count: int | None = Field(default=None, ge=0)


class Constituent(_Contract):
    """Canonical donor/contact record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    external_id: str = Field(..., min_length=1, description="Vendor-scoped id")
    provider: Provider

    first_name: str | None = None
    last_name: str | None = None
    full_name: str = Field(default="Unknown", min_length=1)

    email: str | None = None
    phone: str | None = None

    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None

    giving: GivingSummary = Field(default_factory=GivingSummary)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    synced_at: datetime = Field(default_factory=_utc_now)

    @field_validator("external_id")
    @classmethod
    def validate_external_id(cls, v: str) -> str:
        """Reject whitespace-only ids."""
        if not v.strip():
            raise ValueError("external_id must not be blank")
        return v

    @property
    def identity(self) -> tuple[Provider, str]:
        """Stable identity key."""
        return (self.provider, self.external_id)

    @classmethod
    def from_json(cls, data: bytes | str) -> Constituent:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class Donation(_Contract):
    """Canonical gift/transaction record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    external_id: str = Field(..., min_length=1)
    provider: Provider
    constituent_external_id: str = Field(..., min_length=1)

    amount: float = Field(default=0.0, ge=0)
    donation_date: str | None = None
    donation_type: DonationType = DonationType.OTHER
    status: DonationStatus = DonationStatus.UNKNOWN

    campaign_name: str | None = None
    fund_name: str | None = None
    payment_method: str | None = None
    notes: str | None = None

    custom_fields: dict[str, Any] = Field(default_factory=dict)
    synced_at: datetime = Field(default_factory=_utc_now)

    @property
    def identity(self) -> tuple[Provider, str]:
        """Stable identity key."""
        return (self.provider, self.external_id)

    @property
    def constituent_identity(self) -> tuple[Provider, str]:
        """Identity of the owning constituent (same provider scope)."""
        return (self.provider, self.constituent_external_id)

    @classmethod
    def from_json(cls, data: bytes | str) -> Donation:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class SyncError(_Contract):
    """One record-level or run-level error observed during a sync run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    message: str
    record_id: str | None = None
    code: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)
    recoverable: bool = True


class SyncPhase(str, Enum):
    """Lifecycle phase of a sync run."""

    CONSTITUENTS = "constituents"
    DONATIONS = "donations"
    COMPLETE = "complete"
    FAILED = "failed"


class SyncStatus(str, Enum):
    """Final outcome of a sync run.

    ABORTED is distinct from FAILED: partial success is preserved.
    """

    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class SyncResult(_Contract):
    """Outcome of a sync run, surfaced to the caller."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: str
    provider: Provider
    status: SyncStatus
    reason: str | None = None
    constituents_synced: int = Field(default=0, ge=0)
    donations_synced: int = Field(default=0, ge=0)
    records_total: int = Field(default=0, ge=0)
    records_failed: int = Field(default=0, ge=0)
    stop_reasons: list[str] = Field(default_factory=list)
    rollback_required: bool = False
    errors: list[SyncError] = Field(default_factory=list)
    duration_ms: int = Field(default=0, ge=0)

    @property
    def records_synced(self) -> int:
        return self.constituents_synced + self.donations_synced

    @classmethod
    def from_json(cls, data: bytes | str) -> SyncResult:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))
