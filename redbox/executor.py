"""
Completion executor: one logical request, retried until it lands.

Each attempt loads the conversation, builds the context, picks a key, calls
the provider and classifies what came back as one of three outcomes:

  Success  the text was extracted, accounted for and persisted
  Retry    a transient failure: 429 on the alternate pool, 500/503,
           an unrecognized body shape, or empty text
  Fatal    anything else; carries the upstream error message

The loop in run() owns the retry counter (shared by every failure kind, at
most MAX_RETRIES retries per call), the blacklist side effect for 429s and
the backoff sleep. Retries are only enabled when an alternate key pool is
configured; without one, every failure is final.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable

import httpx

from redbox.config import EngineOptions
from redbox.context import ContextBuilder, RenderOptions
from redbox.credentials import CredentialPool
from redbox.errors import (
    FatalProviderError,
    ProviderError,
    RateLimited,
    RetriesExhausted,
    TransientProviderError,
    UnexpectedResponseShape,
)
from redbox.instructions import InstructionParams
from redbox.models import Conversation, Credential, Message, MessageType, Usage
from redbox.responses import (
    ProviderResponse,
    collect_stream,
    extract_content,
    extract_gemini_sources,
    extract_usage,
    parse_error_message,
)
from redbox.storage.base import ConversationStore
from redbox.tokens import TokenCounter, count_message_tokens
from redbox.wiretap import WireLog

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
REJECTION_MESSAGE = "Your message was flagged as inappropriate and was not sent."
REJECTION_CHAR_DELAY = 0.1
EMPTY_RESPONSE_PLACEHOLDER = "No response content received from API"

ChunkCallback = Callable[[str], None]
UsageCallback = Callable[[Usage, str], None]


def backoff_seconds(retry_count: int) -> float:
    """1s, 2s, 4s, 8s, then capped at 10s."""
    return min(1000 * 2 ** (retry_count - 1), 10000) / 1000


def _noop(*args):
    return None


@dataclass
class AskOptions:
    """Per-call routing, rendering and instruction parameters."""
    model: str | None = None
    user_name: str = "User"
    group_name: str | None = None
    group_desc: str | None = None
    total_participants: str | None = None
    personality_prompt: str | None = None
    include_base_instruction: bool = False
    char_name: str | None = None
    image_url: str | None = None
    file_url: str | None = None
    lo_fi: bool = False
    max_context_window: int | None = None
    reverse_url: str | None = None
    version: int | None = None
    use_alt_api: bool = False
    alt_api_keys: list[str] | None = None
    alt_endpoint: str | None = None
    xapi: bool | None = None
    system_prompt_unsupported: bool = False
    img_url_unsupported: bool = False
    additional_parameters: dict | None = None
    additional_headers: dict | None = None
    disposable_keys: bool | None = None
    key_selection: str | None = None
    stream: bool | None = None

    def instruction_params(self) -> InstructionParams:
        return InstructionParams(
            user_name=self.user_name,
            group_name=self.group_name,
            group_desc=self.group_desc,
            total_participants=self.total_participants,
            personality_prompt=self.personality_prompt,
            use_alt_api=self.use_alt_api,
            include_base_instruction=self.include_base_instruction,
            char_name=self.char_name,
        )

    def render_options(self) -> RenderOptions:
        return RenderOptions(
            system_prompt_unsupported=self.system_prompt_unsupported,
            img_url_unsupported=self.img_url_unsupported,
            lo_fi=self.lo_fi,
            max_context_window=self.max_context_window,
        )


@dataclass
class Success:
    text: str


@dataclass
class Retry:
    error: ProviderError
    backoff: bool = True
    blacklist_key: str | None = None


@dataclass
class Fatal:
    error: Exception


Outcome = Success | Retry | Fatal


class CompletionExecutor:

    def __init__(
        self,
        options: EngineOptions,
        store: ConversationStore,
        pool: CredentialPool,
        builder: ContextBuilder,
        counter: TokenCounter,
        moderator=None,
        wire: WireLog | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.options = options
        self.store = store
        self.pool = pool
        self.builder = builder
        self.counter = counter
        self.moderator = moderator
        self.wire = wire
        self.client = client

    # ── conversation loading ─────────────────────────────────────────────

    async def load_conversation(self, conversation_id: str, user_name: str = "User") -> Conversation:
        """Fetch a conversation, creating (and persisting) it on first reference."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id, user_name=user_name)
            await self.store.set_conversation(conversation)
            logger.info("Created conversation %s", conversation_id)
        else:
            conversation.touch()
        conversation.user_name = user_name
        return conversation

    # ── request plumbing ─────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self):
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.options.timeout) as client:
                yield client

    def _headers(self, key: str, ask: AskOptions, stream: bool) -> dict:
        headers = {
            "Accept": "text/event-stream" if stream else "application/json",
            "Content-Type": "application/json",
        }
        xapi = self.options.xapi if ask.xapi is None else ask.xapi
        if xapi or self.options.auth_header:
            headers[self.options.auth_header or "x-api-key"] = key
        else:
            headers["Authorization"] = f"Bearer {key}"
        if ask.additional_headers:
            headers.update(ask.additional_headers)
        if ask.reverse_url:
            headers["reverse_url"] = ask.reverse_url
        return headers

    def _body(self, messages: list[dict], ask: AskOptions, stream: bool) -> dict:
        body = {
            "model": ask.model or self.options.model,
            "messages": messages,
            "temperature": self.options.temperature,
            "max_tokens": self.options.max_tokens,
            "top_p": self.options.top_p,
            "frequency_penalty": self.options.frequency_penalty,
            "presence_penalty": self.options.presence_penalty,
            "stream": stream,
        }
        if ask.additional_parameters:
            body.update(ask.additional_parameters)
        if ask.version is not None:
            body["version"] = ask.version
        return {k: v for k, v in body.items() if v is not None}

    def _tap(self, kind: str, conversation_id: str, url: str, **kwargs):
        if self.wire is not None:
            self.wire.log(kind, url=url, conversation_id=conversation_id, **kwargs)

    async def _post(self, url: str, headers: dict, body: dict) -> ProviderResponse:
        t0 = time.monotonic()
        async with self._client() as client:
            resp = await client.post(url, json=body, headers=headers)
            latency = (time.monotonic() - t0) * 1000
            if resp.status_code >= 400:
                return ProviderResponse(
                    ok=False,
                    status_code=resp.status_code,
                    body=resp.text,
                    content_type=resp.headers.get("content-type", ""),
                    latency_ms=latency,
                    error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                )
            try:
                data = resp.json()
            except ValueError:
                data = {}
            return ProviderResponse(
                ok=True,
                status_code=resp.status_code,
                data=data if isinstance(data, dict) else {},
                body=resp.text,
                latency_ms=latency,
            )

    async def _post_stream(
        self, url: str, headers: dict, body: dict, on_chunk: ChunkCallback
    ) -> ProviderResponse:
        t0 = time.monotonic()
        async with self._client() as client:
            async with client.stream("POST", url, json=body, headers=headers) as resp:
                if resp.status_code >= 400:
                    raw = (await resp.aread()).decode("utf-8", errors="replace")
                    return ProviderResponse(
                        ok=False,
                        status_code=resp.status_code,
                        body=raw,
                        content_type=resp.headers.get("content-type", ""),
                        latency_ms=(time.monotonic() - t0) * 1000,
                        error=f"HTTP {resp.status_code}: {raw[:200]}",
                    )
                text, usage_payload = await collect_stream(resp.aiter_lines(), on_chunk)
                return ProviderResponse(
                    ok=True,
                    status_code=resp.status_code,
                    data=usage_payload,
                    text=text,
                    latency_ms=(time.monotonic() - t0) * 1000,
                )

    def _classify_failure(
        self,
        response: ProviderResponse,
        alt_route: bool,
        key: str,
        ask: AskOptions,
        retry_enabled: bool,
    ) -> Outcome:
        status = response.status_code
        message = (
            parse_error_message(response.body, response.content_type)
            or f"Request failed with status code {status}"
        )

        if status == 429 and alt_route and retry_enabled:
            disposable = self.options.disposable_keys if ask.disposable_keys is None else ask.disposable_keys
            return Retry(
                RateLimited(message, status),
                backoff=False,
                blacklist_key=key if disposable else None,
            )
        if status in (500, 503) and retry_enabled:
            return Retry(TransientProviderError(message, status))

        logger.error("Provider returned HTTP %d: %s", status, message)
        return Fatal(FatalProviderError(message, status))

    # ── one attempt ──────────────────────────────────────────────────────

    async def _reject(self, on_chunk: ChunkCallback) -> Success:
        for char in REJECTION_MESSAGE:
            on_chunk(char)
            await asyncio.sleep(REJECTION_CHAR_DELAY)
        return Success(REJECTION_MESSAGE)

    async def _attempt(
        self,
        prompt: str | None,
        conversation_id: str,
        ask: AskOptions,
        alt_keys: list[str],
        retry_enabled: bool,
        on_chunk: ChunkCallback,
        on_usage: UsageCallback,
    ) -> Outcome:
        primary: Credential | None = None
        if self.options.moderation and prompt and self.moderator is not None:
            primary = await self.pool.select()
            if await self.moderator(prompt, primary.key):
                logger.info("Prompt for chat %s flagged by moderation", conversation_id)
                return await self._reject(on_chunk)

        conversation = await self.load_conversation(conversation_id, ask.user_name)
        # Archived only on success; a retry rebuilds from the stored history
        evicted: list[Message] = []
        rendered, conversation = await self.builder.build(
            conversation,
            prompt,
            ask.instruction_params(),
            ask.render_options(),
            image_url=ask.image_url,
            file_url=ask.file_url,
            evicted=evicted,
        )
        prompt_tokens = count_message_tokens(rendered, self.counter)

        alt_endpoint = ask.alt_endpoint or self.options.alt_endpoint
        alt_route = ask.use_alt_api and bool(alt_endpoint)
        credential: Credential | str
        if alt_route:
            key = self.pool.select_alternate(alt_keys, ask.key_selection or self.options.key_selection)
            credential = key
            url = alt_endpoint
        else:
            credential = primary or await self.pool.select()
            key = credential.key
            url = self.options.endpoint

        stream = self.options.stream if ask.stream is None else ask.stream
        headers = self._headers(key, ask, stream)
        body = self._body(rendered, ask, stream)
        self._tap("request", conversation_id, url, body=body, headers=headers)

        try:
            if stream:
                response = await self._post_stream(url, headers, body, on_chunk)
            else:
                response = await self._post(url, headers, body)
        except httpx.HTTPError as e:
            self._tap("error", conversation_id, url, body=str(e))
            logger.error("Request to %s failed: %s", url, e)
            return Fatal(FatalProviderError(str(e) or e.__class__.__name__))

        if not response.ok:
            self._tap("error", conversation_id, url, body=response.body, status=response.status_code)
            return self._classify_failure(response, alt_route, key, ask, retry_enabled)

        data = response.data
        self._tap(
            "response", conversation_id, url,
            body=response.text if stream else response.body, status=response.status_code,
        )

        if stream:
            text = response.text or ""
        else:
            if data.get("status") == 500 and data.get("error"):
                return Fatal(FatalProviderError(str(data["error"]), 500))
            text = extract_content(data)
            if text is None:
                error = UnexpectedResponseShape(
                    "Unexpected or empty response structure from API", response.status_code
                )
                logger.error("Unrecognized response structure: %s", response.body[:500])
                return Retry(error) if retry_enabled else Fatal(error)
            text += extract_gemini_sources(data)

        if not text:
            if retry_enabled:
                return Retry(UnexpectedResponseShape("Empty response content", response.status_code))
            text = EMPTY_RESPONSE_PLACEHOLDER

        completion_tokens = self.counter(text)
        usage = extract_usage(data) or Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
        on_usage(usage, key)
        await self.pool.record_usage(credential, usage.total_tokens)

        conversation.messages.append(Message(
            type=MessageType.ASSISTANT,
            content=text,
            usage=usage.to_dict(),
        ))
        conversation.touch()
        await self.store.set_conversation(conversation)
        await self.builder.archive.append_evicted(
            conversation_id, evicted, self.builder.instruction_for(ask.instruction_params())
        )
        logger.info(
            "Completion for chat %s: %d tokens in %.0fms",
            conversation_id, usage.total_tokens, response.latency_ms,
        )
        return Success(text)

    # ── the loop ─────────────────────────────────────────────────────────

    async def run(
        self,
        prompt: str | None,
        conversation_id: str = "default",
        ask: AskOptions | None = None,
        on_chunk: ChunkCallback | None = None,
        on_usage: UsageCallback | None = None,
    ) -> str:
        """Execute a completion, retrying transient failures. Returns the response text."""
        ask = ask or AskOptions()
        on_chunk = on_chunk or _noop
        on_usage = on_usage or _noop
        alt_keys = [k for k in (ask.alt_api_keys or self.options.alt_api_keys) if k]
        retry_enabled = bool(alt_keys)
        retry_count = 0

        while True:
            outcome = await self._attempt(
                prompt, conversation_id, ask, alt_keys, retry_enabled, on_chunk, on_usage
            )
            if isinstance(outcome, Success):
                return outcome.text
            if isinstance(outcome, Fatal):
                raise outcome.error

            if retry_count >= MAX_RETRIES:
                logger.error(
                    "Retries exhausted for chat %s after %d attempts: %s",
                    conversation_id, retry_count + 1, outcome.error,
                )
                raise RetriesExhausted(outcome.error, retry_count + 1)

            if outcome.blacklist_key:
                self.pool.blacklist(outcome.blacklist_key)
            retry_count += 1
            delay = backoff_seconds(retry_count) if outcome.backoff else 0.0
            logger.warning(
                "%s for chat %s, retry %d/%d in %.1fs",
                outcome.error, conversation_id, retry_count, MAX_RETRIES, delay,
            )
            if outcome.backoff:
                await asyncio.sleep(delay)
