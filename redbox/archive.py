"""
Archive: append-only log of messages that left the live context.

One JSONL file per conversation under the archive directory. Each line is a
batch:

    {"messages": [{"role": "system", "content": "..."},
                  {"role": "user", "content": "..."}, ...]}

The last line is always the open batch. Trimming appends evicted messages
to it; a reset appends everything left in the conversation, then closes the
batch by writing a fresh empty one after it.

Archival is best-effort. The live conversation is updated before any file
I/O happens, and write failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from redbox.errors import ArchiveWriteFailure
from redbox.models import Conversation, Message

logger = logging.getLogger(__name__)


def _entry(message: Message) -> dict:
    return {"role": message.role, "content": message.content}


class ArchiveStore:

    def __init__(self, directory: str = "./archives"):
        self.directory = Path(directory)

    def path_for(self, conversation_id: str) -> Path:
        safe = conversation_id.replace("/", "_").replace("\\", "_")
        return self.directory / f"{safe}.jsonl"

    def read_batches(self, conversation_id: str) -> list[dict]:
        """All batches for a conversation, oldest first. Unparseable lines are skipped."""
        path = self.path_for(conversation_id)
        if not path.exists():
            return []
        batches = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                batches.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unparseable archive line in %s", path)
        return batches

    def _write(
        self,
        conversation_id: str,
        entries: list[dict],
        instruction: str | None,
        close_batch: bool,
    ):
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self.path_for(conversation_id)

            lines: list[str] = []
            open_batch = {"messages": []}
            if path.exists():
                text = path.read_text(encoding="utf-8").strip()
                if text:
                    lines = text.split("\n")
                    try:
                        open_batch = json.loads(lines[-1])
                        open_batch.setdefault("messages", [])
                    except json.JSONDecodeError as e:
                        # The unreadable tail is replaced by a fresh batch
                        logger.error("Failed to parse open batch in %s: %s", path, e)
                        open_batch = {"messages": []}

            batch_messages = open_batch["messages"]
            if instruction:
                system = {"role": "system", "content": instruction}
                if batch_messages and batch_messages[0].get("role") == "system":
                    batch_messages[0] = system
                else:
                    batch_messages.insert(0, system)

            batch_messages.extend(entries)

            serialized = json.dumps(open_batch, ensure_ascii=False)
            if lines:
                lines[-1] = serialized
            else:
                lines.append(serialized)
            if close_batch:
                lines.append(json.dumps({"messages": []}))

            path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            raise ArchiveWriteFailure(f"archive write failed for {conversation_id}: {e}") from e

    async def _append(self, conversation_id, entries, instruction, close_batch):
        try:
            await asyncio.to_thread(
                self._write, conversation_id, entries, instruction, close_batch
            )
        except Exception as e:
            logger.error("[archive] %s", e)

    async def evict_oldest(
        self, conversation: Conversation, instruction: str | None = None
    ) -> Message | None:
        """Pop the oldest message off the conversation and archive it."""
        if not conversation.messages:
            return None
        oldest = conversation.messages.pop(0)
        logger.info(
            "[archive] Context limit reached for chat %s, archiving oldest message",
            conversation.id,
        )
        await self.append_evicted(conversation.id, [oldest], instruction)
        return oldest

    async def append_evicted(
        self, conversation_id: str, messages: list[Message], instruction: str | None = None
    ):
        """Append already-removed messages to the open batch, oldest first."""
        if not messages:
            return
        entries = [_entry(m) for m in messages]
        await self._append(conversation_id, entries, instruction, close_batch=False)

    async def wrap_all(self, conversation: Conversation, instruction: str | None = None):
        """Archive every message and close the batch. The caller clears the conversation."""
        logger.info(
            "[archive] Chat %s cleared, archiving %d messages",
            conversation.id, len(conversation.messages),
        )
        entries = [_entry(m) for m in conversation.messages]
        await self._append(conversation.id, entries, instruction, close_batch=True)
