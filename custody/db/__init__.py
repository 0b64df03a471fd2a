"""
Storage Layer for the Evidence Custody Ledger

Provides:
- CustodyStore abstraction (the seam a durable backend replaces)
- InMemoryCustodyStore for development and tests
"""

from .store import (
    CustodyStore,
    InMemoryCustodyStore,
    AppendContext,
    StreamCursor,
    StoreError,
)

__all__ = [
    "CustodyStore",
    "InMemoryCustodyStore",
    "AppendContext",
    "StreamCursor",
    "StoreError",
]
