"""
ChatEngine — the public entry point.

Wires storage, archive, credential pool, context builder and executor
together, and exposes the conversation operations callers need between
completions (reset, delete, counts, summaries).

Usage:

    engine = ChatEngine(["sk-..."], EngineOptions(stream=True))
    text = await engine.ask_stream(print, "hello", conversation_id="42")

No lock is held per conversation id: two concurrent calls on the same
conversation each read, modify and write it, and the last write wins.
"""

from __future__ import annotations

import logging
import re

import httpx

from redbox.archive import ArchiveStore
from redbox.config import EngineOptions
from redbox.context import ContextBuilder
from redbox.credentials import CredentialPool, CredentialRegistry
from redbox.executor import AskOptions, ChunkCallback, CompletionExecutor, UsageCallback
from redbox.models import Conversation, Message, MessageType, Usage, build_content, flatten_content
from redbox.moderation import Moderator
from redbox.storage.base import ConversationStore
from redbox.storage.json_store import JSONFileStore
from redbox.tokens import TokenCounter, make_counter
from redbox.wiretap import WireLog

logger = logging.getLogger(__name__)

YOUTUBE_PATTERNS = [
    re.compile(r"^(https?://)?(www\.)?(youtube\.com|youtu\.be)/.+", re.IGNORECASE),
    re.compile(r"^(https?://)?(m\.)?youtube\.com/.+", re.IGNORECASE),
]


def is_youtube_url(url: str) -> bool:
    return bool(url) and any(p.match(url) for p in YOUTUBE_PATTERNS)


def _has_youtube_file(message: Message) -> bool:
    return any(is_youtube_url(u) for u in message.part_urls("file_url"))


def _has_vision(message: Message) -> bool:
    return message.is_multipart and any(
        p.get("type") == "image_url" and (p.get("image_url") or {}).get("detail") != "low"
        for p in message.content
    )


class ChatEngine:

    def __init__(
        self,
        keys: str | list[str] | None = None,
        options: EngineOptions | None = None,
        store: ConversationStore | None = None,
        archive: ArchiveStore | None = None,
        registry: CredentialRegistry | None = None,
        counter: TokenCounter | None = None,
        moderator=None,
        wire: WireLog | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.options = options or EngineOptions()
        self.store = store or JSONFileStore()
        self.archive = archive or ArchiveStore()
        self.counter = counter or make_counter()
        self.pool = CredentialPool(self.store, registry, unit_price=self.options.price)
        self.builder = ContextBuilder(
            self.archive,
            self.counter,
            instructions=self.options.instructions,
            base_instruction=self.options.base_instruction,
            max_conversation_tokens=self.options.max_conversation_tokens,
            reserved_completion_tokens=self.options.max_tokens,
        )
        if moderator is None and self.options.moderation:
            moderator = Moderator()
        self.executor = CompletionExecutor(
            self.options,
            self.store,
            self.pool,
            self.builder,
            self.counter,
            moderator=moderator,
            wire=wire,
            client=client,
        )
        self.on_usage: UsageCallback | None = None
        self._pending_keys = [keys] if isinstance(keys, str) else list(keys or [])
        self._ready = False

    @classmethod
    def from_config(cls, cfg: dict, **overrides) -> "ChatEngine":
        """Build an engine from a loaded config dict (see config.yaml)."""
        from redbox.storage import store_from_config

        options = EngineOptions.from_config(cfg)
        wire = None
        wire_cfg = cfg.get("wiretap", {}) or {}
        if options.debug or wire_cfg.get("enabled"):
            wire = WireLog(
                wire_cfg.get("path", "./data/wire.jsonl"),
                sensitive_headers=(options.auth_header,),
            )
        kwargs = dict(
            keys=(cfg.get("credentials", {}) or {}).get("api_keys") or [],
            options=options,
            store=store_from_config(cfg),
            archive=ArchiveStore((cfg.get("archive", {}) or {}).get("path", "./archives")),
            registry=CredentialRegistry((cfg.get("blacklist", {}) or {}).get("path")),
            counter=make_counter((cfg.get("tokenizer", {}) or {}).get("encoding")),
            moderator=Moderator(
                (cfg.get("moderation", {}) or {}).get("endpoint")
                or "https://api.openai.com/v1/moderations"
            ),
            wire=wire,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    async def _ensure_ready(self):
        if self._ready:
            return
        await self.pool.register([k for k in self._pending_keys if k])
        self._ready = True

    async def close(self):
        await self.store.close()
        if self.executor.wire is not None:
            self.executor.wire.close()

    # ── completions ──────────────────────────────────────────────────────

    async def ask_stream(
        self,
        on_chunk: ChunkCallback,
        prompt: str | None,
        conversation_id: str = "default",
        on_usage: UsageCallback | None = None,
        **options,
    ) -> str:
        """
        Send `prompt` in the context of `conversation_id` and return the reply.
        Streamed deltas (when streaming is on) go to on_chunk as they arrive.
        Keyword options are AskOptions fields.
        """
        await self._ensure_ready()
        ask = AskOptions(**options)

        def usage_hook(usage: Usage, key: str):
            if on_usage is not None:
                on_usage(usage, key)
            if self.on_usage is not None:
                self.on_usage(usage, key)

        return await self.executor.run(prompt, conversation_id, ask, on_chunk, usage_hook)

    async def ask(self, prompt: str | None, conversation_id: str = "default", **options) -> str:
        return await self.ask_stream(lambda _chunk: None, prompt, conversation_id, **options)

    # ── conversation operations ──────────────────────────────────────────

    async def add_conversation(self, conversation_id: str, user_name: str = "User") -> Conversation:
        conversation = Conversation(id=conversation_id, user_name=user_name)
        await self.store.set_conversation(conversation)
        return conversation

    async def get_conversation(self, conversation_id: str, user_name: str = "User") -> Conversation:
        """Fetch or create; refreshes last_active and user_name."""
        conversation = await self.executor.load_conversation(conversation_id, user_name)
        await self.store.set_conversation(conversation)
        return conversation

    async def reset_conversation(self, conversation_id: str) -> Conversation | None:
        """Archive the whole history as a closed batch, then clear it."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return None
        await self.archive.wrap_all(conversation, "")
        conversation.messages = []
        conversation.touch()
        await self.store.set_conversation(conversation)
        return conversation

    async def delete_last_messages(self, conversation_id: str, count: int = 1) -> Conversation | None:
        """Drop the newest `count` messages. No-op when fewer than `count` exist."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return None
        if count < 1 or len(conversation.messages) < count:
            logger.info(
                "Chat %s has fewer than %d messages, nothing deleted", conversation_id, count
            )
            return conversation
        del conversation.messages[-count:]
        conversation.touch()
        await self.store.set_conversation(conversation)
        return conversation

    async def delete_last_message(self, conversation_id: str) -> Conversation | None:
        return await self.delete_last_messages(conversation_id, 1)

    async def delete_last_two_messages(self, conversation_id: str) -> Conversation | None:
        return await self.delete_last_messages(conversation_id, 2)

    async def _delete_last_matching(self, conversation_id: str, predicate, label: str):
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or not conversation.messages:
            return conversation
        for i in range(len(conversation.messages) - 1, -1, -1):
            if predicate(conversation.messages[i]):
                del conversation.messages[i]
                conversation.touch()
                await self.store.set_conversation(conversation)
                logger.info("%s message at index %d removed from chat %s", label, i, conversation_id)
                return conversation
        logger.info("No %s messages found in chat %s", label.lower(), conversation_id)
        return conversation

    async def delete_last_vision_message(self, conversation_id: str) -> Conversation | None:
        return await self._delete_last_matching(
            conversation_id, lambda m: m.has_part("image_url"), "Vision"
        )

    async def delete_last_file_message(self, conversation_id: str) -> Conversation | None:
        return await self._delete_last_matching(
            conversation_id, lambda m: m.has_part("file_url"), "File"
        )

    async def delete_last_youtube_file_message(self, conversation_id: str) -> Conversation | None:
        return await self._delete_last_matching(conversation_id, _has_youtube_file, "YouTube file")

    async def _count(self, conversation_id: str, predicate) -> int:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return 0
        return sum(1 for m in conversation.messages if predicate(m))

    async def count_chats_with_vision(self, conversation_id: str) -> int:
        return await self._count(conversation_id, _has_vision)

    async def count_chats_with_file(self, conversation_id: str) -> int:
        return await self._count(conversation_id, lambda m: m.has_part("file_url"))

    async def count_chats_with_youtube_file(self, conversation_id: str) -> int:
        return await self._count(conversation_id, _has_youtube_file)

    async def get_first_and_last_message(self, conversation_id: str) -> dict | None:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or not conversation.messages:
            return None
        first, last = conversation.messages[0], conversation.messages[-1]
        usage = last.usage or {}
        return {
            "first_message": flatten_content(first.content),
            "last_message": flatten_content(last.content),
            "last_type": int(last.type),
            "is_last_message_vision": last.has_part("image_url"),
            "is_last_message_file": last.has_part("file_url"),
            "prompt_tokens": usage.get("prompt_tokens"),
            "completion_tokens": usage.get("completion_tokens"),
            "total_tokens": usage.get("total_tokens"),
        }

    async def add_assistant_message(
        self,
        conversation_id: str,
        text: str,
        image_url: str | None = None,
        file_url: str | None = None,
    ) -> Conversation | None:
        """Append an assistant message without calling the provider."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            return None
        conversation.messages.append(Message(
            type=MessageType.ASSISTANT,
            content=build_content(text, image_url, file_url),
        ))
        conversation.touch()
        await self.store.set_conversation(conversation)
        return conversation
