"""Pytest configuration and fixtures"""
import asyncio
import json
import os
from typing import Optional

import httpx
import pytest

# Set test environment variables
os.environ.setdefault("CARTSYNC_ENV", "test")
os.environ.setdefault("CARTSYNC_API_BASE_URL", "https://api.test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from cartsync.cart.remote import RemoteStore  # noqa: E402
from cartsync.cart.service import SyncCoordinator  # noqa: E402
from cartsync.cart.storage import FileBackend, LocalStore  # noqa: E402
from cartsync.services.notifications import NotificationEmitter  # noqa: E402

BASE_URL = "https://api.test"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """
    In-memory cart/wishlist REST backend served through httpx.MockTransport.

    Items are stored in their wire form keyed by (itemId, selectedSize).
    Every request is recorded in calls. Set hold to an asyncio.Event to park
    every request until it is set, or map a path to an Event in parked to
    park only that path. Queue canned failures in fail_next, and map item
    ids to a canned failure in reject_adds to fail their add.
    """

    def __init__(self):
        self.cart: dict[tuple, dict] = {}
        self.wishlist: dict[tuple, dict] = {}
        self.calls: list[tuple[str, str, dict, Optional[dict]]] = []
        self.hold: Optional[asyncio.Event] = None
        self.parked: dict[str, asyncio.Event] = {}
        self.fail_next: list[tuple[int, object]] = []
        self.reject_adds: dict[str, tuple[int, dict]] = {}
        self.stock: dict[str, int] = {}

    def seed_cart(self, item_id, quantity=1, size=None, stock=10, price="10.00", name=None):
        self.cart[(item_id, size)] = {
            "itemId": item_id,
            "selectedSize": size,
            "quantity": quantity,
            "unitPrice": price,
            "availableStock": stock,
            "snapshot": {"name": name or item_id},
        }

    def seed_wishlist(self, item_id, size=None, name=None, price="10.00"):
        self.wishlist[(item_id, size)] = {
            "itemId": item_id,
            "selectedSize": size,
            "snapshot": {"name": name or item_id, "price": price},
        }

    def writes(self, method: str, path: str) -> list[Optional[dict]]:
        return [body for m, p, _, body in self.calls if m == method and p == path]

    def _cart_body(self, **extra):
        return {"success": True, "cartItems": list(self.cart.values()), **extra}

    def _wishlist_body(self, **extra):
        return {"success": True, "wishlistItems": list(self.wishlist.values()), **extra}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = dict(request.url.params)
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, params, body))

        if self.hold is not None:
            await self.hold.wait()
        if path in self.parked:
            await self.parked[path].wait()

        if self.fail_next:
            status, payload = self.fail_next.pop(0)
            if isinstance(payload, (dict, list)):
                return httpx.Response(status, json=payload)
            return httpx.Response(status, content=str(payload).encode())

        if request.headers.get("Authorization") != "Bearer test-token":
            return httpx.Response(401, json={"message": "Unauthorized"})

        size = params.get("selectedSize") or None
        method = request.method

        if method == "GET" and path == "/cart":
            return httpx.Response(200, json=self._cart_body())
        if method == "POST" and path == "/cart/add":
            key = (body["itemId"], body.get("selectedSize"))
            if body["itemId"] in self.reject_adds:
                status, payload = self.reject_adds[body["itemId"]]
                return httpx.Response(status, json=payload)
            if key in self.cart:
                return httpx.Response(409, json={"message": "Item already in cart"})
            self.cart[key] = dict(body)
            return httpx.Response(200, json=self._cart_body(message="Item added to cart"))
        if path.startswith("/cart/item/"):
            key = (path.rsplit("/", 1)[1], size)
            if key not in self.cart:
                return httpx.Response(404, json={"message": "Item not found in cart"})
            if method == "PUT":
                self.cart[key] = {**self.cart[key], "quantity": body["quantity"]}
            else:
                del self.cart[key]
            return httpx.Response(200, json=self._cart_body())
        if method == "DELETE" and path == "/cart/clear":
            self.cart.clear()
            return httpx.Response(200, json={"success": True, "message": "Cart cleared"})

        if method == "GET" and path == "/wishlist":
            return httpx.Response(200, json=self._wishlist_body())
        if method == "POST" and path == "/wishlist/add":
            key = (body["itemId"], body.get("selectedSize"))
            if key in self.wishlist:
                return httpx.Response(409, json={"message": "Item already in wishlist"})
            self.wishlist[key] = dict(body)
            return httpx.Response(200, json=self._wishlist_body())
        if method == "DELETE" and path.startswith("/wishlist/remove/"):
            key = (path.rsplit("/", 1)[1], size)
            if key not in self.wishlist:
                return httpx.Response(404, json={"message": "Item not found in wishlist"})
            del self.wishlist[key]
            return httpx.Response(200, json=self._wishlist_body())
        if method == "DELETE" and path == "/wishlist/clear":
            self.wishlist.clear()
            return httpx.Response(200, json={"success": True})
        if method == "POST" and path.startswith("/wishlist/move-to-cart/"):
            key = (path.rsplit("/", 1)[1], body.get("selectedSize"))
            entry = self.wishlist.pop(key, None)
            if entry is None:
                return httpx.Response(404, json={"message": "Item not found in wishlist"})
            self.cart[key] = {
                "itemId": key[0],
                "selectedSize": key[1],
                "quantity": body["quantity"],
                "unitPrice": entry["snapshot"].get("price", "0"),
                "availableStock": self.stock.get(key[0], 10),
                "snapshot": {"name": entry["snapshot"].get("name", "")},
            }
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "wishlistItems": list(self.wishlist.values()),
                    "cartItems": list(self.cart.values()),
                },
            )

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})


@pytest.fixture
def backend():
    """Fake REST backend"""
    return FakeBackend()


@pytest.fixture
def token():
    """Mutable bearer token holder; set token["value"] = None to go anonymous"""
    return {"value": "test-token"}


@pytest.fixture
def remote_store(backend, token):
    """RemoteStore wired to the fake backend"""
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    return RemoteStore(lambda: token["value"], base_url=BASE_URL, http_client=client)


@pytest.fixture
def local_path(tmp_path):
    return tmp_path / "cartsync" / "local_state.json"


@pytest.fixture
def local_store(local_path):
    """File-backed LocalStore in a temp directory"""
    return LocalStore(FileBackend(local_path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifications(clock):
    return NotificationEmitter(timeout_ms=3000, clock=clock)


@pytest.fixture
def coordinator(local_store, remote_store, notifications):
    """SyncCoordinator over a temp LocalStore and the fake backend"""
    return SyncCoordinator(local_store, remote_store, notifications=notifications, timeout=1.0)


@pytest.fixture
def make_item():
    """Factory for raw cart item payloads"""

    def _make(item_id="p1", quantity=1, stock=10, size=None, price="10.00", name=None):
        return {
            "itemId": item_id,
            "selectedSize": size,
            "quantity": quantity,
            "unitPrice": price,
            "availableStock": stock,
            "name": name or f"Product {item_id}",
        }

    return _make


@pytest.fixture
def make_entry():
    """Factory for raw wishlist entry payloads"""

    def _make(item_id="w1", size=None, price="25.00", name=None):
        return {
            "itemId": item_id,
            "selectedSize": size,
            "name": name or f"Product {item_id}",
            "price": price,
        }

    return _make
