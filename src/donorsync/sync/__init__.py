"""Sync run orchestration."""

from donorsync.sync.engine import EngineState, RecordSink, SyncEngine, SyncJob
from donorsync.sync.state import SyncRunState, generate_request_id

__all__ = [
    "EngineState",
    "RecordSink",
    "SyncEngine",
    "SyncJob",
    "SyncRunState",
    "generate_request_id",
]
