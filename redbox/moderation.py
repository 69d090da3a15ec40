"""
Moderation check against an OpenAI-compatible /v1/moderations endpoint.

A failed moderation call never blocks a request: it is logged and the
prompt is treated as not flagged.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MODERATION_URL = "https://api.openai.com/v1/moderations"


class Moderator:
    """Callable collaborator: `await moderator(text, key) -> bool` (flagged)."""

    def __init__(self, url: str = DEFAULT_MODERATION_URL, timeout: float = 30):
        self.url = url
        self.timeout = timeout

    async def __call__(self, text: str, key: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.url,
                    json={"input": text},
                    headers={"Authorization": f"Bearer {key}"},
                )
                resp.raise_for_status()
                results = resp.json().get("results", [])
                return bool(results and results[0].get("flagged"))
        except Exception as e:
            logger.warning("Moderation check failed, treating as not flagged: %s", e)
            return False
