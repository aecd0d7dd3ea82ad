"""RemoteStore - httpx client over the backend cart/wishlist API.

Every call returns a RemoteResult; transport errors, non-2xx responses and
malformed bodies are reported in the result, never raised. There are no
retries here, retry policy belongs to the coordinator.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from cartsync import config
from cartsync.errors import MSG_NETWORK, MSG_TIMEOUT, CredentialError
from cartsync.logging import get_logger, sanitize_id_for_logging
from .models import (
    ItemKey,
    LineItem,
    WishlistEntry,
    build_many,
    make_line_item,
    make_wishlist_entry,
)

logger = get_logger(__name__)

CART_ITEMS_FIELD = "cartItems"
WISHLIST_ITEMS_FIELD = "wishlistItems"

TokenProvider = Callable[[], Optional[str]]


class ErrorKind(str, Enum):
    """Why a remote call failed."""

    NETWORK = "network"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    SERVER = "server"
    MALFORMED = "malformed"


_CONFLICT_STATUSES = frozenset({404, 409, 410})
_REJECTED_STATUSES = frozenset({400, 422})


def _kind_for_status(status_code: int) -> ErrorKind:
    if status_code in _CONFLICT_STATUSES:
        return ErrorKind.CONFLICT
    if status_code in _REJECTED_STATUSES:
        return ErrorKind.REJECTED
    return ErrorKind.SERVER


@dataclass
class RemoteResult:
    """Outcome of one backend call.

    items is None when the response carried no item list at all (for
    example a bare {"success": true} on clear), so callers can tell
    "no items returned" from "the collection is now empty".
    """

    success: bool
    items: Optional[list] = None
    message: Optional[str] = None
    status_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    cart_items: Optional[list[LineItem]] = None

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
    ) -> "RemoteResult":
        return cls(success=False, message=message, status_code=status_code, error_kind=kind)


@dataclass
class _Endpoint:
    items_field: str
    factory: Callable[[Any], Any]


_CART = _Endpoint(CART_ITEMS_FIELD, make_line_item)
_WISHLIST = _Endpoint(WISHLIST_ITEMS_FIELD, make_wishlist_entry)


class RemoteStore:
    """
    Authenticated client for the cart and wishlist endpoints.

    The bearer token comes from token_provider on every call. Calling any
    method without a token raises CredentialError: the coordinator must only
    use this store while the session is authenticated.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.token_provider = token_provider
        self.base_url = (base_url or config.get_api_base_url()).rstrip("/")
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout

        # HTTP client (lazy init)
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy creation of shared httpx client with timeouts."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self) -> dict[str, str]:
        token = self.token_provider()
        if not token:
            raise CredentialError("RemoteStore called without a bearer token")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        endpoint: _Endpoint,
        *,
        params: dict | None = None,
        json: dict | None = None,
    ) -> RemoteResult:
        headers = self._headers()
        client = await self._get_http_client()
        url = f"{self.base_url}{path}"

        try:
            response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out: %s", method, path, type(e).__name__)
            return RemoteResult.failure(ErrorKind.NETWORK, MSG_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, type(e).__name__)
            return RemoteResult.failure(ErrorKind.NETWORK, MSG_NETWORK)

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            message = None
            if isinstance(body, dict) and isinstance(body.get("message"), str):
                message = body["message"]
            message = message or f"HTTP {response.status_code}: {response.reason_phrase}"
            logger.warning("%s %s -> %s: %s", method, path, response.status_code, message)
            return RemoteResult.failure(
                _kind_for_status(response.status_code), message, response.status_code
            )

        if not isinstance(body, dict):
            logger.error("%s %s returned a non-object body", method, path)
            return RemoteResult.failure(
                ErrorKind.MALFORMED, "Malformed response from server", response.status_code
            )

        message = body.get("message") if isinstance(body.get("message"), str) else None
        if body.get("success") is False:
            return RemoteResult.failure(
                ErrorKind.REJECTED, message or "Request was rejected", response.status_code
            )

        items = None
        raw_items = body.get(endpoint.items_field, body.get("items"))
        if raw_items is not None:
            items, errors = build_many(raw_items, endpoint.factory)
            if errors:
                logger.error("%s %s returned malformed items: %s", method, path, errors[0])
                return RemoteResult.failure(
                    ErrorKind.MALFORMED, "Malformed response from server", response.status_code
                )

        result = RemoteResult(
            success=True, items=items, message=message, status_code=response.status_code
        )
        if endpoint is not _CART and body.get(CART_ITEMS_FIELD) is not None:
            cart_items, errors = build_many(body[CART_ITEMS_FIELD], make_line_item)
            if not errors:
                result.cart_items = cart_items
        return result

    @staticmethod
    def _item_path(prefix: str, key: ItemKey) -> str:
        return f"{prefix}/{quote(key.item_id, safe='')}"

    @staticmethod
    def _size_params(key: ItemKey) -> dict | None:
        return {"selectedSize": key.selected_size} if key.selected_size else None

    # ==================== CART ====================

    async def fetch_cart(self) -> RemoteResult:
        return await self._request("GET", "/cart", _CART)

    async def add_item(self, item: LineItem) -> RemoteResult:
        logger.debug("Remote add %s", sanitize_id_for_logging(item.key))
        return await self._request("POST", "/cart/add", _CART, json=item.to_dict())

    async def update_quantity(self, key: ItemKey, quantity: int) -> RemoteResult:
        body: dict[str, Any] = {"quantity": quantity}
        if key.selected_size:
            body["selectedSize"] = key.selected_size
        return await self._request(
            "PUT",
            self._item_path("/cart/item", key),
            _CART,
            params=self._size_params(key),
            json=body,
        )

    async def remove_item(self, key: ItemKey) -> RemoteResult:
        return await self._request(
            "DELETE", self._item_path("/cart/item", key), _CART, params=self._size_params(key)
        )

    async def clear_cart(self) -> RemoteResult:
        return await self._request("DELETE", "/cart/clear", _CART)

    # ==================== WISHLIST ====================

    async def fetch_wishlist(self) -> RemoteResult:
        return await self._request("GET", "/wishlist", _WISHLIST)

    async def add_wishlist_entry(self, entry: WishlistEntry) -> RemoteResult:
        return await self._request("POST", "/wishlist/add", _WISHLIST, json=entry.to_dict())

    async def remove_wishlist_entry(self, key: ItemKey) -> RemoteResult:
        return await self._request(
            "DELETE",
            self._item_path("/wishlist/remove", key),
            _WISHLIST,
            params=self._size_params(key),
        )

    async def clear_wishlist(self) -> RemoteResult:
        return await self._request("DELETE", "/wishlist/clear", _WISHLIST)

    async def move_to_cart(self, key: ItemKey, quantity: int = 1) -> RemoteResult:
        """Move a wishlist entry into the cart server-side.

        The response's wishlist goes to items; when the server also returns
        the cart, it is parsed into cart_items.
        """
        body: dict[str, Any] = {"quantity": quantity}
        if key.selected_size:
            body["selectedSize"] = key.selected_size
        return await self._request(
            "POST", self._item_path("/wishlist/move-to-cart", key), _WISHLIST, json=body
        )


async def bounded(call: Awaitable[RemoteResult], timeout: float | None) -> RemoteResult:
    """Await a RemoteStore call, turning a hang past timeout into a NETWORK failure."""
    if timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        logger.warning("Remote call exceeded %.1fs", timeout)
        return RemoteResult.failure(ErrorKind.NETWORK, MSG_TIMEOUT)
