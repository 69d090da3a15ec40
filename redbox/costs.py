"""
Cost Tracking — know what you're spending.

Aggregates the per-key counters the credential pool keeps (queries, tokens,
balance). Balance is tokens × unit price, so the totals here are what the
primary keys have cost so far. Keys are always masked on the way out.
"""

from __future__ import annotations

import logging

from redbox.credentials import mask_key
from redbox.storage.base import ConversationStore

logger = logging.getLogger(__name__)


class CostTracker:
    """Query and aggregate usage across stored credentials."""

    def __init__(self, store: ConversationStore):
        self.store = store

    async def get_stats(self) -> dict:
        """
        Returns:
            {
                "total": 0.123,
                "queries": 42,
                "tokens": 61500,
                "keys": 2,
                "by_key": [{"key": "sk-abc...wxyz", "queries": 21, "tokens": 30000,
                            "balance": 0.06}, ...]
            }
        """
        credentials = await self.store.list_credentials()
        by_key = sorted(
            (
                {
                    "key": mask_key(c.key),
                    "queries": c.queries,
                    "tokens": c.tokens,
                    "balance": round(c.balance, 6),
                }
                for c in credentials
            ),
            key=lambda row: row["balance"],
            reverse=True,
        )
        return {
            "total": round(sum(c.balance for c in credentials), 6),
            "queries": sum(c.queries for c in credentials),
            "tokens": sum(c.tokens for c in credentials),
            "keys": len(credentials),
            "by_key": by_key,
        }

    async def get_total(self) -> float:
        """All-time total spend."""
        credentials = await self.store.list_credentials()
        return round(sum(c.balance for c in credentials), 6)
