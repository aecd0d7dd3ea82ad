"""Client-local persistence for anonymous carts and wishlists.

The whole local state is one JSON blob:

    {"cartItems": [...], "wishlistItems": [...]}

stored under a fixed key. It is a convenience cache, not a durable
record: unreadable data is logged and treated as empty.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from cartsync import config
from cartsync.logging import get_logger
from .models import LineItem, WishlistEntry, build_many, make_line_item, make_wishlist_entry

logger = get_logger(__name__)

CART_FIELD = "cartItems"
WISHLIST_FIELD = "wishlistItems"


class StorageBackend(Protocol):
    """Synchronous key-value slot holding the serialized blob."""

    def read(self) -> Optional[str]: ...

    def write(self, data: str) -> None: ...

    def delete(self) -> None: ...


class FileBackend:
    """Blob stored in a JSON file; writes go through a temp file and a rename."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path or config.LOCAL_STORE_PATH)

    def read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text("utf-8")

    def write(self, data: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(data, "utf-8")
        os.replace(tmp, self.path)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class RedisBackend:
    """Blob stored under a session key in Upstash Redis."""

    def __init__(self, key: str, client: Any = None, ttl: int | None = None):
        self.key = key
        self.ttl = config.LOCAL_TTL if ttl is None else ttl
        self._client = client

    @property
    def client(self):
        """Get Redis client (lazy initialization)."""
        if self._client is None:
            from cartsync.db import get_redis_sync

            self._client = get_redis_sync()
        return self._client

    def read(self) -> Optional[str]:
        data = self.client.get(self.key)
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    def write(self, data: str) -> None:
        if self.ttl:
            self.client.set(self.key, data, ex=self.ttl)
        else:
            self.client.set(self.key, data)

    def delete(self) -> None:
        self.client.delete(self.key)


@dataclass
class LocalSnapshot:
    """Contents of the local store."""

    cart: list[LineItem] = field(default_factory=list)
    wishlist: list[WishlistEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.cart and not self.wishlist


class LocalStore:
    """
    Reads and writes the local cart/wishlist blob.

    None of the methods raise: load() falls back to empty collections,
    save() and clear() report failure as False.
    """

    def __init__(self, backend: StorageBackend | None = None):
        self.backend = backend if backend is not None else FileBackend()

    def load(self) -> LocalSnapshot:
        """Load local state; missing or corrupt data yields an empty snapshot."""
        try:
            raw = self.backend.read()
        except Exception as e:
            logger.error("Failed to read local cart state: %s", e, exc_info=True)
            return LocalSnapshot()

        if not raw:
            return LocalSnapshot()

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Corrupted local cart state, starting empty: %s", e)
            return LocalSnapshot()

        if not isinstance(data, dict):
            logger.warning("Unexpected local cart state type %s, starting empty", type(data).__name__)
            return LocalSnapshot()

        cart, cart_errors = build_many(data.get(CART_FIELD, []), make_line_item)
        wishlist, wishlist_errors = build_many(data.get(WISHLIST_FIELD, []), make_wishlist_entry)
        for error in cart_errors + wishlist_errors:
            logger.warning("Dropped malformed local item: %s", error)

        return LocalSnapshot(cart=cart, wishlist=wishlist)

    def save(self, cart: list[LineItem], wishlist: list[WishlistEntry]) -> bool:
        """Persist both collections in one write."""
        payload = json.dumps(
            {
                CART_FIELD: [item.to_dict() for item in cart],
                WISHLIST_FIELD: [entry.to_dict() for entry in wishlist],
            }
        )
        try:
            self.backend.write(payload)
            return True
        except Exception as e:
            logger.error("Failed to save local cart state: %s", e, exc_info=True)
            return False

    def clear(self) -> bool:
        """Remove the local blob entirely."""
        try:
            self.backend.delete()
            return True
        except Exception as e:
            logger.error("Failed to clear local cart state: %s", e, exc_info=True)
            return False
