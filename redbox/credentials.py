"""
Credential selection.

Two pools:
  - primary:   Credential records in storage. select() picks the lowest
               balance, spreading spend evenly across keys.
  - alternate: plain key strings supplied per call (alt-API). Selected
               sequentially (round-robin, cursor survives across calls) or
               at random, after removing blacklisted keys.

The blacklist lives in a CredentialRegistry handed to the pool, so each
engine (and each test) can own its own. It only ever filters alternate
pools, and nothing here clears it.
"""

from __future__ import annotations

import json
import logging
import random
from pathlib import Path

from redbox.errors import AllCredentialsBlacklisted, NoCredentialsAvailable
from redbox.models import Credential
from redbox.storage.base import ConversationStore

logger = logging.getLogger(__name__)

SEQUENTIAL = "sequential"
RANDOM = "random"


def mask_key(key: str) -> str:
    """sk-abc...wxyz; short keys are fully masked."""
    if not key or len(key) <= 10:
        return "***"
    return f"{key[:6]}...{key[-4:]}"


class CredentialRegistry:
    """
    Blacklist of alternate-pool keys, optionally persisted to a JSON side
    file shaped {"blacklisted": [...]}. In memory only when path is None.
    """

    def __init__(self, path: str | None = None):
        self.path = Path(path) if path else None
        self._blacklisted: list[str] = self._load()

    def _load(self) -> list[str]:
        if not self.path or not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            keys = data.get("blacklisted", [])
            return list(keys) if isinstance(keys, list) else []
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Error reading blacklisted keys from %s: %s", self.path, e)
            return []

    def _persist(self):
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({"blacklisted": self._blacklisted}, indent=2), encoding="utf-8"
            )
        except OSError as e:
            logger.error("Error writing blacklisted keys to %s: %s", self.path, e)

    @property
    def blacklisted(self) -> frozenset[str]:
        return frozenset(self._blacklisted)

    def is_blacklisted(self, key: str) -> bool:
        return key in self._blacklisted

    def blacklist(self, key: str):
        if key in self._blacklisted:
            return
        self._blacklisted.append(key)
        self._persist()
        logger.warning(
            "Key %s blacklisted. Total blacklisted: %d", mask_key(key), len(self._blacklisted)
        )

    def filter(self, keys: list[str]) -> list[str]:
        return [k for k in keys if k not in self._blacklisted]


class CredentialPool:
    """Selects credentials and keeps their usage counters."""

    def __init__(
        self,
        store: ConversationStore,
        registry: CredentialRegistry | None = None,
        unit_price: float = 0.002,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.registry = registry or CredentialRegistry()
        self.unit_price = unit_price
        self._rng = rng or random.Random()
        self._cursor = 0
        # Alternate keys are never persisted; their counters live here.
        self.alternate_usage: dict[str, Credential] = {}

    async def register(self, keys: str | list[str]) -> int:
        """Store a Credential record for each key not already known. Returns count added."""
        if isinstance(keys, str):
            keys = [keys]
        added = 0
        for key in keys:
            if not key or await self.store.get_credential(key):
                continue
            await self.store.set_credential(Credential(key=key))
            added += 1
        if added:
            logger.info("Registered %d new API key(s)", added)
        return added

    async def select(self, pool: list[Credential] | None = None) -> Credential:
        """Lowest-balance credential from the primary pool."""
        if pool is None:
            pool = await self.store.list_credentials()
        if not pool:
            raise NoCredentialsAvailable()
        return min(pool, key=lambda c: c.balance)

    def select_alternate(self, pool: list[str], mode: str = RANDOM) -> str:
        """Pick a key from an alternate pool, skipping blacklisted keys."""
        available = self.registry.filter([k for k in pool if k])
        if not available:
            if pool:
                logger.error("All alternate API keys are blacklisted")
                raise AllCredentialsBlacklisted()
            raise NoCredentialsAvailable("Alternative API key is undefined")

        if mode == SEQUENTIAL:
            key = available[self._cursor % len(available)]
            self._cursor = (self._cursor + 1) % len(available)
        else:
            key = self._rng.choice(available)

        logger.info(
            "Using alternate API key at index %d (%d available of %d)",
            pool.index(key), len(available), len(pool),
        )
        return key

    def blacklist(self, key: str):
        self.registry.blacklist(key)

    async def record_usage(self, credential: Credential | str, tokens: int) -> Credential:
        """
        Bump query/token counters and recompute balance. Primary credentials
        are written through to storage; alternate keys are tracked in memory.
        """
        if isinstance(credential, str):
            record = self.alternate_usage.setdefault(credential, Credential(key=credential))
            record.record_usage(tokens, self.unit_price)
            return record

        current = await self.store.get_credential(credential.key) or credential
        current.record_usage(tokens, self.unit_price)
        await self.store.set_credential(current)
        return current
