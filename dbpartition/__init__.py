"""
db-partition - archives aged buffer records out of the live store.

The partition run moves records older than the retention window into
write-once archive files and leaves a reconciliation row behind so that
the archived data can be located later:

    ┌────────────┐     ┌────────────┐     ┌──────────────┐
    │ Live store │────▶│  Grouper   │────▶│ Archive      │
    │ (buffers)  │     │ (per day)  │     │ Writer/Retry │
    └─────┬──────┘     └────────────┘     └──────┬───────┘
          │                                      │
          │            ┌────────────┐            ▼
          └────────────│  Cleanup   │◀──── Metadata (buffersMeta)
                       └────────────┘       or recovery file

Invariants:
    - A record is only eligible for deletion once its archive file is confirmed written
    - Archive files are never modified after they are written
    - Metadata failures never block archival

How to change safely:
    - Keep archive paths deterministic, fingerprints are derived from them
    - Add new reconciliation fields additively
"""

from ._version import __version__

__all__ = ["__version__"]
