"""
Config loader for redbox.
Reads config.yaml once at startup. All other modules import from here.

EngineOptions is the typed view of the `engine:` block that the completion
pipeline consumes; everything else stays a plain dict.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant. You respond to user input in a conversational "
    "manner and answer as concisely as possible. You can provide information on a "
    "wide range of topics, but your knowledge is limited to what was present in "
    "your training data. You strive to provide accurate and helpful information "
    "to the best of your ability."
)


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {}) or {}
    level = getattr(logging, str(log_cfg.get("level") or "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _as_key_list(value) -> list[str]:
    """Accept a single key or a list of keys; drop blanks (unset env vars)."""
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(v) for v in value if v]


@dataclass
class EngineOptions:
    """Options consumed by the context builder and completion executor."""
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.7
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    instructions: str = DEFAULT_INSTRUCTIONS
    base_instruction: str = ""
    moderation: bool = False
    stream: bool = False
    price: float = 0.002
    max_conversation_tokens: int = 4097
    endpoint: str = "https://api.openai.com/v1/chat/completions"
    alt_endpoint: str = ""
    alt_api_keys: list[str] = field(default_factory=list)
    auth_header: str = ""
    xapi: bool = False
    disposable_keys: bool = False
    key_selection: str = "random"
    timeout: float = 120
    debug: bool = False

    def __post_init__(self):
        self.alt_api_keys = _as_key_list(self.alt_api_keys)
        if not self.instructions:
            self.instructions = DEFAULT_INSTRUCTIONS

    @classmethod
    def from_config(cls, cfg: dict) -> "EngineOptions":
        """Build options from the `engine:` block; unknown keys are ignored."""
        engine_cfg = cfg.get("engine", {}) or {}
        known = cls.__dataclass_fields__.keys()
        kwargs = {
            k: v for k, v in engine_cfg.items()
            if k in known and v is not None and v != ""
        }
        return cls(**kwargs)
