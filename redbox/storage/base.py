"""
ConversationStore — abstract base for conversation/credential storage.

Two record families, both get/set by id:
  conversations  keyed by conversation id, may expire
  credentials    keyed by API key, never expire

Every method is async so the engine awaits storage the same way whichever
backend is configured. Implementations return independent copies: mutating
a returned record never changes stored state until it is set again.
"""

from abc import ABC, abstractmethod

from redbox.models import Conversation, Credential


class ConversationStore(ABC):
    """Abstract storage backend."""

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    async def set_conversation(self, conversation: Conversation) -> None:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    @abstractmethod
    async def list_conversation_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def get_credential(self, key: str) -> Credential | None:
        ...

    @abstractmethod
    async def set_credential(self, credential: Credential) -> None:
        ...

    @abstractmethod
    async def list_credentials(self) -> list[Credential]:
        ...

    @abstractmethod
    async def delete_credential(self, key: str) -> None:
        ...

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None
