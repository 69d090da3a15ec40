"""
Data models for conversations and credentials.
These define the shape of data flowing through the engine and into storage.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from enum import IntEnum
from uuid import uuid4


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageType(IntEnum):
    USER = 1
    ASSISTANT = 2


def build_content(
    text: str,
    image_url: str | None = None,
    file_url: str | None = None,
    lo_fi: bool = False,
) -> str | list[dict]:
    """
    Build message content: a plain string, or an ordered list of typed parts
    when an image and/or file reference is attached. Text always comes first.
    """
    if not image_url and not file_url:
        return text

    parts: list[dict] = [{"type": "text", "text": text}]
    if image_url:
        image = {"url": image_url}
        if lo_fi:
            image["detail"] = "low"
        parts.append({"type": "image_url", "image_url": image})
    if file_url:
        parts.append({"type": "file_url", "file_url": {"url": file_url}})
    return parts


def flatten_content(content) -> str:
    """Text part, then image and file URLs on their own lines."""
    if not isinstance(content, list):
        return content or ""
    text = next((p.get("text", "") for p in content if p.get("type") == "text"), "")
    image = next(
        (p.get("image_url", {}).get("url", "") for p in content if p.get("type") == "image_url"), ""
    )
    file = next(
        (p.get("file_url", {}).get("url", "") for p in content if p.get("type") == "file_url"), ""
    )
    out = text or ""
    if image:
        out += "\n" + image
    if file:
        out += "\n" + file
    return out


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class Message:
    """A single message in a conversation."""
    type: MessageType = MessageType.USER
    content: str | list[dict] = ""
    id: str = field(default_factory=lambda: str(uuid4()))
    date: int = field(default_factory=now_ms)
    usage: dict | None = None

    @property
    def role(self) -> str:
        return "user" if self.type == MessageType.USER else "assistant"

    @property
    def is_multipart(self) -> bool:
        return isinstance(self.content, list)

    def has_part(self, part_type: str) -> bool:
        return self.is_multipart and any(p.get("type") == part_type for p in self.content)

    def part_urls(self, part_type: str) -> list[str]:
        if not self.is_multipart:
            return []
        return [
            p.get(part_type, {}).get("url", "")
            for p in self.content
            if p.get("type") == part_type
        ]

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": int(self.type),
            "content": copy.deepcopy(self.content),
            "date": self.date,
        }
        if self.usage is not None:
            data["usage"] = dict(self.usage)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data.get("id") or str(uuid4()),
            type=MessageType(int(data.get("type", MessageType.USER))),
            content=copy.deepcopy(data.get("content", "")),
            date=data.get("date") or now_ms(),
            usage=data.get("usage"),
        )


@dataclass
class Conversation:
    """Ordered message history keyed by an external id."""
    id: str
    user_name: str = "User"
    messages: list[Message] = field(default_factory=list)
    last_active: int = field(default_factory=now_ms)

    def touch(self):
        self.last_active = now_ms()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_name": self.user_name,
            "messages": [m.to_dict() for m in self.messages],
            "last_active": self.last_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            id=data["id"],
            user_name=data.get("user_name") or data.get("userName") or "User",
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            last_active=data.get("last_active") or data.get("lastActive") or now_ms(),
        )


@dataclass
class Credential:
    """An API key plus usage/cost bookkeeping. balance = tokens / 1000 * price."""
    key: str
    queries: int = 0
    tokens: int = 0
    balance: float = 0.0

    def record_usage(self, tokens: int, unit_price: float):
        self.queries += 1
        self.tokens += max(0, int(tokens))
        self.balance = self.tokens / 1000 * unit_price

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "queries": self.queries,
            "tokens": self.tokens,
            "balance": self.balance,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        return cls(
            key=data["key"],
            queries=int(data.get("queries", 0)),
            tokens=int(data.get("tokens", 0)),
            balance=float(data.get("balance", 0.0)),
        )
