"""Sync engine package."""

from ledgersync.sync.batch_writer import (
    BatchWriter,
    ChunkFailure,
    ClassifiedTransaction,
    WriteOutcome,
)
from ledgersync.sync.orchestrator import (
    LedgerClient,
    SyncOrchestrator,
    SyncRunResult,
    SyncStateNotFoundError,
)
from ledgersync.sync.safety import SafetyPolicy
from ledgersync.sync.webhooks import handle_webhook

__all__ = [
    # Orchestration
    "SyncOrchestrator",
    "SyncRunResult",
    "SyncStateNotFoundError",
    "LedgerClient",
    "handle_webhook",
    # Safety
    "SafetyPolicy",
    # Writes
    "BatchWriter",
    "ChunkFailure",
    "ClassifiedTransaction",
    "WriteOutcome",
]
