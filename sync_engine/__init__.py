"""Sync engine - executes DevPos to QuickBooks sync jobs."""

from sync_engine.executor import DocumentOutcome, SyncExecutor, open_executor
from sync_engine.parties import CounterpartyResolver

__all__ = [
    "CounterpartyResolver",
    "DocumentOutcome",
    "SyncExecutor",
    "open_executor",
]
