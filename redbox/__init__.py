"""RedBox — conversation-aware completions over OpenAI-compatible APIs."""

from redbox.config import EngineOptions
from redbox.engine import ChatEngine
from redbox.errors import (
    AllCredentialsBlacklisted,
    FatalProviderError,
    NoCredentialsAvailable,
    ProviderError,
    RedboxError,
    RetriesExhausted,
)
from redbox.executor import AskOptions

__version__ = "0.4.0"

__all__ = [
    "AllCredentialsBlacklisted",
    "AskOptions",
    "ChatEngine",
    "EngineOptions",
    "FatalProviderError",
    "NoCredentialsAvailable",
    "ProviderError",
    "RedboxError",
    "RetriesExhausted",
    "__version__",
]
