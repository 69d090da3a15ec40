"""
Context building: turn a Conversation into the message list sent upstream.

build() appends the new prompt, renders instruction + history into
role-tagged messages, then trims: while rendered tokens plus reserved
completion headroom exceed the context budget, the oldest message is moved
to the archive and the list is rendered again. Each pass removes one
message, so the loop ends after at most len(messages) passes. If the
instruction alone is still over budget once history is empty, it is sent
as-is.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass

import httpx

from redbox.archive import ArchiveStore
from redbox.errors import ImageResolutionError
from redbox.instructions import ACKNOWLEDGMENT, InstructionParams, compose_instructions
from redbox.models import Conversation, Message, MessageType, build_content
from redbox.tokens import TokenCounter, count_message_tokens

logger = logging.getLogger(__name__)

IMAGE_FETCH_ATTEMPTS = 5
IMAGE_FETCH_DELAY = 2.0


async def image_url_to_data_uri(
    url: str,
    attempts: int = IMAGE_FETCH_ATTEMPTS,
    delay: float = IMAGE_FETCH_DELAY,
    timeout: float = 30,
) -> str:
    """Download an image and return it as a base64 data URI."""
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                content_type = resp.headers.get("content-type", "image/jpeg").split(";")[0]
                encoded = base64.b64encode(resp.content).decode("ascii")
                return f"data:{content_type};base64,{encoded}"
        except httpx.HTTPError as e:
            last_error = e
            logger.warning(
                "Error converting image to base64 (attempt %d/%d): %s", attempt, attempts, e
            )
            if attempt < attempts:
                await asyncio.sleep(delay)
    raise ImageResolutionError(
        f"Failed to convert image to base64 after {attempts} attempts: {last_error}"
    )


@dataclass
class RenderOptions:
    """Per-request rendering switches."""
    system_prompt_unsupported: bool = False
    img_url_unsupported: bool = False
    lo_fi: bool = False
    max_context_window: int | None = None


class ContextBuilder:

    def __init__(
        self,
        archive: ArchiveStore,
        counter: TokenCounter,
        instructions: str,
        base_instruction: str = "",
        max_conversation_tokens: int = 4097,
        reserved_completion_tokens: int | None = None,
        image_resolver=image_url_to_data_uri,
    ):
        self.archive = archive
        self.counter = counter
        self.instructions = instructions
        self.base_instruction = base_instruction
        self.max_conversation_tokens = max_conversation_tokens
        self.reserved_completion_tokens = reserved_completion_tokens
        self.image_resolver = image_resolver

    def instruction_for(self, params: InstructionParams) -> str:
        return compose_instructions(self.instructions, params, self.base_instruction)

    def budget_used(self, rendered: list[dict]) -> int:
        used = count_message_tokens(rendered, self.counter)
        if self.reserved_completion_tokens:
            used += self.reserved_completion_tokens
        return used

    async def _render_part(self, part: dict, render: RenderOptions, resolved: dict) -> dict:
        kind = part.get("type")
        if kind == "image_url":
            url = part.get("image_url", {}).get("url", "")
            if render.img_url_unsupported and not url.startswith("data:"):
                if url not in resolved:
                    resolved[url] = await self.image_resolver(url)
                url = resolved[url]
            image = {"url": url}
            if render.lo_fi or part.get("image_url", {}).get("detail") == "low":
                image["detail"] = "low"
            return {"type": "image_url", "image_url": image}
        if kind == "file_url":
            return {"type": "file_url", "file_url": {"url": part.get("file_url", {}).get("url", "")}}
        return {"type": "text", "text": part.get("text", "")}

    async def render(
        self,
        conversation: Conversation,
        instruction: str,
        render: RenderOptions,
        resolved: dict | None = None,
    ) -> list[dict]:
        """Instruction slot(s) followed by every stored message, in order."""
        resolved = {} if resolved is None else resolved
        messages: list[dict] = []

        if render.system_prompt_unsupported:
            messages.append({"role": "user", "content": instruction})
            starts_with_assistant = (
                conversation.messages and conversation.messages[0].type == MessageType.ASSISTANT
            )
            if not starts_with_assistant:
                messages.append({"role": "assistant", "content": ACKNOWLEDGMENT})
        else:
            messages.append({"role": "system", "content": instruction})

        for message in conversation.messages:
            if message.is_multipart:
                content = [
                    await self._render_part(part, render, resolved) for part in message.content
                ]
            else:
                content = message.content
            messages.append({"role": message.role, "content": content})
        return messages

    async def build(
        self,
        conversation: Conversation,
        prompt: str | None,
        params: InstructionParams,
        render: RenderOptions | None = None,
        image_url: str | None = None,
        file_url: str | None = None,
        evicted: list[Message] | None = None,
    ) -> tuple[list[dict], Conversation]:
        """
        Append the prompt, render, and trim to budget. Mutates `conversation`.

        Trimmed messages are archived right away, unless an `evicted` list is
        passed: then they are collected there, oldest first, and the caller
        archives them once the trimmed conversation has been persisted.
        """
        render = render or RenderOptions()

        if prompt:
            conversation.messages.append(Message(
                type=MessageType.USER,
                content=build_content(prompt, image_url, file_url, render.lo_fi),
            ))

        instruction = self.instruction_for(params)
        budget = render.max_context_window or self.max_conversation_tokens
        resolved: dict[str, str] = {}

        rendered = await self.render(conversation, instruction, render, resolved)
        used = self.budget_used(rendered)
        while used > budget:
            if not conversation.messages:
                logger.warning(
                    "Instruction alone exceeds the context budget (%d > %d) for chat %s; "
                    "sending it anyway",
                    used, budget, conversation.id,
                )
                break
            if evicted is None:
                await self.archive.evict_oldest(conversation, instruction)
            else:
                evicted.append(conversation.messages.pop(0))
            rendered = await self.render(conversation, instruction, render, resolved)
            used = self.budget_used(rendered)

        conversation.touch()
        return rendered, conversation
