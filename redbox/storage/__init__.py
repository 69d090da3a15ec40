"""
Storage backend factory.

Usage:
    from redbox.storage import make_store
    store = make_store("sqlite", db_path="./data/redbox.db")

Adding a new backend:
    1. Create redbox/storage/<name>.py implementing ConversationStore.
    2. Add an entry to _REGISTRY below.
    3. Set  storage.backend: <name>  in config.yaml.
"""

from .base import ConversationStore
from .json_store import JSONFileStore
from .sqlite_store import SQLiteStore

_REGISTRY: dict[str, type[ConversationStore]] = {
    "sqlite": SQLiteStore,
    "json": JSONFileStore,
}


def make_store(backend_type: str, **kwargs) -> ConversationStore:
    """
    Instantiate a storage backend by name.

    Raises:
        ValueError: If the backend type is not registered.
    """
    cls = _REGISTRY.get(backend_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown storage backend: '{backend_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


def store_from_config(cfg: dict) -> ConversationStore:
    storage_cfg = cfg.get("storage", {}) or {}
    backend = storage_cfg.get("backend", "sqlite")
    if backend == "json":
        return make_store("json", path=storage_cfg.get("json_path", "./data/db.json"))
    return make_store(
        backend,
        db_path=storage_cfg.get("sqlite_path", "./data/redbox.db"),
        conversation_ttl_days=storage_cfg.get("conversation_ttl_days", 30),
    )


__all__ = ["ConversationStore", "JSONFileStore", "SQLiteStore", "make_store", "store_from_config"]
