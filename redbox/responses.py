"""
Provider response parsing.

Upstream providers disagree on where the completion text lives, so content
extraction is a ranked list of extractors tried in order; each returns the
text or None. Usage extraction works the same way. Streaming responses are
Server-Sent Events: `data: {json}` lines ending with `data: [DONE]`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Callable

from redbox.models import Usage

logger = logging.getLogger(__name__)

DONE_SENTINEL = "data: [DONE]"
DATA_PREFIX = "data: "


@dataclass
class ProviderResponse:
    """Standardized result of one HTTP exchange with the provider."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    text: str | None = None     # assembled text of a streamed completion
    body: str = ""              # raw body of an error response
    latency_ms: float = 0.0
    content_type: str = ""
    error: str = ""


# ── content ───────────────────────────────────────────────────────────────────

def _choices_message(data: dict) -> str | None:
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        content = (choices[0] or {}).get("message", {}).get("content")
        if isinstance(content, str) and content:
            return content
    return None


def _responses_message(data: dict) -> str | None:
    responses = data.get("responses")
    if isinstance(responses, list) and responses:
        content = (responses[0] or {}).get("message", {}).get("content")
        if isinstance(content, str) and content:
            return content
    return None


def _message_fragments(data: dict) -> str | None:
    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), list):
        return " ".join(
            item.get("text", "") for item in message["content"] if isinstance(item, dict)
        )
    return None


CONTENT_EXTRACTORS: list[Callable[[dict], str | None]] = [
    _choices_message,
    _responses_message,
    _message_fragments,
]


def extract_content(data: dict) -> str | None:
    """First extractor hit wins. None means the shape is not recognized."""
    if not isinstance(data, dict):
        return None
    for extractor in CONTENT_EXTRACTORS:
        text = extractor(data)
        if text is not None:
            return text
    return None


def extract_gemini_sources(data: dict) -> str:
    """Numbered list of grounding URLs from Gemini responses, or ''."""
    try:
        chunks = data["choices"][0]["google_gemini_body"]["groundingMetadata"]["groundingChunks"]
    except (KeyError, IndexError, TypeError):
        return ""
    if not isinstance(chunks, list):
        return ""
    uris = [c["web"]["resolved_uri"] for c in chunks if (c.get("web") or {}).get("resolved_uri")]
    if not uris:
        return ""
    sources = "\n".join(f"{i}. {uri}" for i, uri in enumerate(uris, start=1))
    return f"\n\nSource:\n{sources}"


# ── usage ─────────────────────────────────────────────────────────────────────

def _openai_usage(data: dict) -> Usage | None:
    usage = data.get("usage")
    if not isinstance(usage, dict) or not any(
        k in usage for k in ("prompt_tokens", "completion_tokens", "total_tokens")
    ):
        return None
    return Usage(
        prompt_tokens=usage.get("prompt_tokens") or 0,
        completion_tokens=usage.get("completion_tokens") or 0,
        total_tokens=usage.get("total_tokens") or 0,
    )


def _token_io_usage(data: dict) -> Usage | None:
    tokens = (data.get("usage") or {}).get("tokens")
    if not isinstance(tokens, dict):
        return None
    prompt = tokens.get("input_tokens") or 0
    completion = tokens.get("output_tokens") or 0
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


USAGE_EXTRACTORS: list[Callable[[dict], Usage | None]] = [
    _openai_usage,
    _token_io_usage,
]


def extract_usage(data: dict) -> Usage | None:
    if not isinstance(data, dict):
        return None
    for extractor in USAGE_EXTRACTORS:
        usage = extractor(data)
        if usage is not None:
            return usage
    return None


def parse_error_message(body: str, content_type: str) -> str | None:
    """`error.message` from a JSON error body, else None."""
    if "application/json" not in (content_type or ""):
        return None
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message") or "Unknown API error"
    if isinstance(error, str) and error:
        return error
    return "Unknown API error"


# ── streaming ─────────────────────────────────────────────────────────────────

async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the payload of each `data: ` line until `data: [DONE]`."""
    async for line in lines:
        line = line.rstrip()
        if line == DONE_SENTINEL:
            return
        if line.startswith(DATA_PREFIX):
            yield line[len(DATA_PREFIX):]


async def collect_stream(
    lines: AsyncIterable[str],
    on_chunk: Callable[[str], None],
) -> tuple[str, dict]:
    """
    Reassemble a streamed completion. Each delta is forwarded to on_chunk
    as it arrives. Returns (full_text, last_usage_payload).
    Frames that are not valid JSON, or whose first choice carries no delta
    object, are logged and skipped.
    """
    parts: list[str] = []
    usage_payload: dict = {}
    async for payload in iter_sse_data(lines):
        try:
            frame = json.loads(payload)
        except json.JSONDecodeError:
            logger.error("Could not JSON parse stream message: %r", payload[:200])
            continue
        if not isinstance(frame, dict):
            continue
        if isinstance(frame.get("usage"), dict):
            usage_payload = {"usage": frame["usage"]}
        choices = frame.get("choices") or []
        choice = choices[0] if isinstance(choices, list) and choices else None
        delta = choice.get("delta") if isinstance(choice, dict) else None
        if not isinstance(delta, dict):
            if choices and not (isinstance(choice, dict) and delta is None):
                logger.error("Skipping stream frame without a delta: %r", payload[:200])
            continue
        content = delta.get("content")
        if isinstance(content, str) and content:
            parts.append(content)
            on_chunk(content)
    return "".join(parts), usage_payload
