"""Read-side queries package."""

from budget_ledger.queries.snapshot import SnapshotReader, summarize_snapshot

__all__ = ["SnapshotReader", "summarize_snapshot"]
