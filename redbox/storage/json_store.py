"""
Flat JSON file store.

The whole database is one document:
    {"conversations": {"<id>": {...}}, "keys": [{"key": ..., ...}]}

Loaded once, rewritten after every set/delete. No expiry: conversations live
until reset or deleted. Meant for single-process use and small deployments.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from redbox.models import Conversation, Credential
from redbox.storage.base import ConversationStore

logger = logging.getLogger(__name__)


class JSONFileStore(ConversationStore):

    def __init__(self, path: str = "./data/db.json"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._data = self._load()

    def _load(self) -> dict:
        data = {"conversations": {}, "keys": []}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8") or "{}")
                data["conversations"] = loaded.get("conversations", {}) or {}
                data["keys"] = loaded.get("keys", []) or []
            except json.JSONDecodeError as e:
                logger.error("Could not parse %s, starting empty: %s", self.path, e)
        logger.info(
            "JSON store loaded from %s (%d conversations, %d keys)",
            self.path, len(data["conversations"]), len(data["keys"]),
        )
        return data

    def _flush(self):
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    async def _save(self):
        await asyncio.to_thread(self._flush)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        raw = self._data["conversations"].get(conversation_id)
        return Conversation.from_dict(raw) if raw else None

    async def set_conversation(self, conversation: Conversation) -> None:
        self._data["conversations"][conversation.id] = conversation.to_dict()
        await self._save()

    async def delete_conversation(self, conversation_id: str) -> None:
        if self._data["conversations"].pop(conversation_id, None) is not None:
            await self._save()

    async def list_conversation_ids(self) -> list[str]:
        return list(self._data["conversations"].keys())

    async def get_credential(self, key: str) -> Credential | None:
        for raw in self._data["keys"]:
            if raw.get("key") == key:
                return Credential.from_dict(raw)
        return None

    async def set_credential(self, credential: Credential) -> None:
        keys = self._data["keys"]
        for i, raw in enumerate(keys):
            if raw.get("key") == credential.key:
                keys[i] = credential.to_dict()
                break
        else:
            keys.append(credential.to_dict())
        await self._save()

    async def list_credentials(self) -> list[Credential]:
        return [Credential.from_dict(raw) for raw in self._data["keys"]]

    async def delete_credential(self, key: str) -> None:
        before = len(self._data["keys"])
        self._data["keys"] = [k for k in self._data["keys"] if k.get("key") != key]
        if len(self._data["keys"]) != before:
            await self._save()
