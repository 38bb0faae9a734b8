"""Canonical contracts shared by adapters, the sync engine and storage."""

from donorsync.contracts.models import (
    Constituent,
    Donation,
    DonationStatus,
    DonationType,
    GivingSummary,
    Provider,
    RecordKind,
    SyncError,
    SyncPhase,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "Constituent",
    "Donation",
    "DonationStatus",
    "DonationType",
    "GivingSummary",
    "Provider",
    "RecordKind",
    "SyncError",
    "SyncPhase",
    "SyncResult",
    "SyncStatus",
]
