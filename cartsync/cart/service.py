"""Sync coordinator - the cart/wishlist facade used by every UI surface.

One SyncCoordinator owns one SyncState. It writes through to the active
backing store (LocalStore while anonymous, RemoteStore once logged in)
and only then updates the in-memory state, so the state never shows a
quantity the store did not confirm.
"""
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Hashable, Optional

from cartsync import config
from cartsync.errors import (
    MSG_CART_DUPLICATE,
    MSG_CART_NOT_FOUND,
    MSG_LOGIN_REQUIRED,
    MSG_TIMEOUT,
    MSG_WISHLIST_DUPLICATE,
    ConflictError,
    NetworkError,
    RemoteError,
    StockError,
    StorageError,
    SyncError,
    ValidationError,
)
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.services.notifications import NotificationEmitter, NotificationType, Outcome
from .locks import KeyedLocks, LatestValueWriter
from .merge import MergeCoordinator
from .models import (
    ItemKey,
    LineItem,
    WishlistEntry,
    cart_subtotal,
    find,
    is_checkout_eligible,
    make_key,
    make_line_item,
    make_wishlist_entry,
)
from .remote import ErrorKind, RemoteResult, RemoteStore, bounded
from .stock import StockCheck, StockStatus, StockValidator
from .storage import LocalStore

logger = get_logger(__name__)

CART = NotificationType.CART
WISHLIST = NotificationType.WISHLIST
GENERAL = NotificationType.GENERAL


class Backing(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class SyncState:
    """The single in-memory source of truth shared by all subscribers.

    UI must not render an empty cart before initialized is True.
    """

    backing: Backing = Backing.LOCAL
    cart: list[LineItem] = field(default_factory=list)
    wishlist: list[WishlistEntry] = field(default_factory=list)
    initialized: bool = False
    pending_keys: set = field(default_factory=set)
    transitioning: bool = False


@dataclass
class SyncResult:
    """Outcome of a coordinator call. Truthy on success."""

    success: bool
    error: Optional[SyncError] = None
    message: Optional[str] = None
    stock: Optional[StockCheck] = None
    in_wishlist: Optional[bool] = None

    def __bool__(self) -> bool:
        return self.success


Listener = Callable[[SyncState], None]


def _error_for(result: RemoteResult) -> SyncError:
    if result.error_kind is ErrorKind.NETWORK:
        reason = "timeout" if result.message == MSG_TIMEOUT else "network"
        return NetworkError(result.message, reason=reason)
    if result.error_kind is ErrorKind.CONFLICT:
        return ConflictError(result.message, status_code=result.status_code)
    return RemoteError(result.message, status_code=result.status_code)


def _coerce_key(key: Any) -> ItemKey:
    if isinstance(key, (LineItem, WishlistEntry)):
        return key.key
    if isinstance(key, tuple):
        return make_key(*key)
    return make_key(key)


def _replace(items: list, key: ItemKey, new_item) -> list:
    return [new_item if item.key == key else item for item in items]


def _without(items: list, key: ItemKey) -> list:
    return [item for item in items if item.key != key]


class SyncCoordinator:
    """
    Cart and wishlist facade.

    - every public coroutine returns a SyncResult and never raises for
      validation, stock, network or conflict failures
    - writes to the same key run one at a time; quantity updates for a key
      collapse to the latest requested value
    - login()/logout() are the only backing transitions; calls made during
      a transition wait for it and then run against the new backing store
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        *,
        stock: StockValidator | None = None,
        notifications: NotificationEmitter | None = None,
        timeout: float | None = None,
        merge_factory: Callable[[LocalStore, RemoteStore], MergeCoordinator] | None = None,
    ):
        self.local = local
        self.remote = remote
        self.stock = stock or StockValidator()
        self.notifications = notifications or NotificationEmitter()
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self._merge_factory = merge_factory or (
            lambda local_store, remote_store: MergeCoordinator(
                local_store, remote_store, timeout=self.timeout
            )
        )

        self.state = SyncState()
        self._listeners: list[Listener] = []
        self._locks = KeyedLocks()
        self._quantity_writer = LatestValueWriter(self._write_quantity)
        self._pending: dict[Hashable, int] = {}

        self._settled = asyncio.Event()
        self._settled.set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._active = 0
        self._transition_lock = asyncio.Lock()

        self._init_task: Optional[asyncio.Future] = None
        self._login_task: Optional[asyncio.Future] = None

    # ==================== SUBSCRIPTION ====================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener with the state after every change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("State listener failed")

    # ==================== READ HELPERS ====================

    @property
    def backing(self) -> Backing:
        return self.state.backing

    def cart_item(self, key: Any) -> Optional[LineItem]:
        return find(self.state.cart, _coerce_key(key))

    def cart_count(self) -> int:
        """Total number of units in the cart."""
        return sum(item.quantity for item in self.state.cart)

    def subtotal(self) -> Decimal:
        return cart_subtotal(self.state.cart)

    def checkout_eligible(self) -> bool:
        return is_checkout_eligible(self.state.cart)

    def is_in_wishlist(self, item_id: Any, selected_size: str | None = None) -> bool:
        key = _coerce_key(item_id) if selected_size is None else make_key(item_id, selected_size)
        return find(self.state.wishlist, key) is not None

    def wishlist_count(self) -> int:
        return len(self.state.wishlist)

    # ==================== PLUMBING ====================

    def _mark(self, key: Hashable) -> None:
        self._pending[key] = self._pending.get(key, 0) + 1
        if key not in self.state.pending_keys:
            self.state.pending_keys.add(key)
            self._publish()

    def _unmark(self, key: Hashable) -> None:
        self._pending[key] -= 1
        if not self._pending[key]:
            del self._pending[key]
            self.state.pending_keys.discard(key)
            self._publish()

    async def _admit(self) -> None:
        while not self._settled.is_set():
            await self._settled.wait()
        self._active += 1
        self._idle.clear()

    def _leave(self) -> None:
        self._active -= 1
        if not self._active:
            self._idle.set()

    @asynccontextmanager
    async def _operation(self, *lock_keys: Hashable):
        """Admit one mutation: wait out transitions, then hold the per-key locks."""
        await self._admit()
        for key in lock_keys:
            self._mark(key)
        try:
            async with AsyncExitStack() as stack:
                for key in lock_keys:
                    await stack.enter_async_context(self._locks.hold(key))
                yield
        finally:
            for key in lock_keys:
                self._unmark(key)
            self._leave()

    @asynccontextmanager
    async def _transition(self):
        async with self._transition_lock:
            self._settled.clear()
            self.state.transitioning = True
            self._publish()
            try:
                while self._active:
                    await self._idle.wait()
                yield
            finally:
                self.state.transitioning = False
                self._settled.set()
                self._publish()

    async def _remote_call(self, call) -> RemoteResult:
        result = await bounded(call, self.timeout)
        if not result.success:
            raise _error_for(result)
        return result

    def _save_local(
        self,
        cart: list[LineItem] | None = None,
        wishlist: list[WishlistEntry] | None = None,
    ) -> None:
        cart = self.state.cart if cart is None else cart
        wishlist = self.state.wishlist if wishlist is None else wishlist
        if not self.local.save(cart, wishlist):
            raise StorageError()

    def _set_cart(self, items: list[LineItem]) -> None:
        self.state.cart = list(items)
        self.stock.refresh(items)
        self._publish()

    def _set_wishlist(self, entries: list[WishlistEntry]) -> None:
        self.state.wishlist = list(entries)
        self._publish()

    def _notify(self, type: NotificationType, action: str, subject: str | None = None, **values) -> None:
        self.notifications.emit(type, Outcome.SUCCESS, action=action, subject=subject, **values)

    def _warn_insufficient(self, check: StockCheck, subject: str | None) -> None:
        if check.status is StockStatus.INSUFFICIENT:
            self.notifications.emit(
                CART,
                Outcome.ERROR,
                subject=subject,
                reason="insufficient",
                available=check.available_stock,
            )

    async def _fail(
        self, type: NotificationType, error: SyncError, subject: str | None = None
    ) -> SyncResult:
        """Report a failure: resync on conflict, notify, and wrap it in a SyncResult."""
        logger.info("%s operation failed (%s): %s", type.value, error.reason, error.message)
        if isinstance(error, ConflictError) and self.state.backing is Backing.REMOTE:
            await self._resync()

        values = {}
        if isinstance(error, StockError):
            values["available"] = error.available_stock
        message = error.message if error.has_custom_message and error.reason != "validation" else None
        self.notifications.emit(
            type, Outcome.ERROR, subject=subject, reason=error.reason, message=message, **values
        )
        return SyncResult(False, error=error, message=error.message)

    async def _resync(self) -> None:
        """Reload after a conflict; admitted like a mutation so transitions wait for it."""
        backing = self.state.backing
        try:
            async with self._operation():
                if self.state.backing is not backing:
                    logger.info("Resync skipped, backing changed to %s", self.state.backing.value)
                    return
                await self._load()
        except SyncError as e:
            logger.warning("Resync after conflict failed: %s", e.message)

    # ==================== LIFECYCLE ====================

    async def _load(self) -> None:
        """Replace in-memory state with the active backing store's contents.

        A remote snapshot is dropped if the backing changed while it was
        being fetched.
        """
        backing = self.state.backing
        if backing is Backing.LOCAL:
            snapshot = self.local.load()
            cart, wishlist = snapshot.cart, snapshot.wishlist
        else:
            results = await asyncio.gather(
                self._remote_call(self.remote.fetch_cart()),
                self._remote_call(self.remote.fetch_wishlist()),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            if self.state.backing is not backing:
                logger.info("Discarded %s snapshot, backing changed during load", backing.value)
                return
            cart_result, wishlist_result = results
            cart, wishlist = cart_result.items or [], wishlist_result.items or []

        self.state.cart = list(cart)
        self.state.wishlist = list(wishlist)
        self.stock.refresh(cart)
        self.state.initialized = True
        self._publish()

    async def initialize(self) -> SyncResult:
        """
        Hydrate state from the active backing store.

        Safe to call from every UI surface: once initialized it returns
        immediately, and concurrent callers share one in-flight load.
        """
        if self.state.initialized:
            return SyncResult(True)

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def _initialize(self) -> SyncResult:
        try:
            async with self._operation():
                if not self.state.initialized:
                    await self._load()
                    logger.info(
                        "Initialized from %s: %d cart lines, %d wishlist entries",
                        self.state.backing.value,
                        len(self.state.cart),
                        len(self.state.wishlist),
                    )
            return SyncResult(True)
        except SyncError as e:
            return await self._fail(GENERAL, e)

    async def refresh(self) -> SyncResult:
        """Re-read the active backing store."""
        try:
            async with self._operation():
                await self._load()
            return SyncResult(True)
        except SyncError as e:
            return await self._fail(GENERAL, e)

    async def login(self) -> SyncResult:
        """
        Switch to the account cart after the auth layer reports a login.

        Runs the merge once per login event; concurrent calls share it. If
        the remote cannot be read, the session stays local and nothing is
        lost.
        """
        if self.state.backing is Backing.REMOTE:
            return SyncResult(True)
        if self._login_task is None or self._login_task.done():
            self._login_task = asyncio.ensure_future(self._login())
        return await asyncio.shield(self._login_task)

    async def _login(self) -> SyncResult:
        async with self._transition():
            if self.state.backing is Backing.REMOTE:
                return SyncResult(True)

            report = await self._merge_factory(self.local, self.remote).run()
            if not report.completed:
                error = NetworkError(report.message, reason="merge_failed")
                self.notifications.emit(GENERAL, Outcome.ERROR, reason="merge_failed")
                return SyncResult(False, error=error, message=error.message)

            self.state.backing = Backing.REMOTE
            self.state.cart = list(report.cart)
            self.state.wishlist = list(report.wishlist)
            self.stock.reset()
            self.stock.refresh(report.cart)
            self.state.initialized = True
            self._publish()
            logger.info("Switched to remote cart (%d lines)", len(report.cart))

        if report.failed:
            self.notifications.emit(
                GENERAL, Outcome.ERROR, reason="merge_partial", count=report.failed_count
            )
        elif report.merged:
            self._notify(GENERAL, "merged")
        return SyncResult(True)

    async def logout(self) -> SyncResult:
        """Drop the account cart and fall back to local state."""
        async with self._transition():
            if self.state.backing is Backing.LOCAL:
                return SyncResult(True)
            self.state.backing = Backing.LOCAL
            snapshot = self.local.load()
            self.state.cart = snapshot.cart
            self.state.wishlist = snapshot.wishlist
            self.stock.reset()
            self.stock.refresh(snapshot.cart)
            self.state.initialized = True
            self._publish()
            logger.info("Switched to local cart")
        return SyncResult(True)

    # ==================== CART ====================

    async def add_item(self, item: Any) -> SyncResult:
        """
        Add a new line to the cart.

        Out-of-stock items are rejected; a quantity above the known stock is
        clamped and reported through result.stock.
        """
        subject = None
        try:
            item = make_line_item(item)
            subject = item.name or None
            async with self._operation(("cart", item.key)):
                check = await self._add_item(item)
            self._notify(CART, "added", subject)
            self._warn_insufficient(check, subject)
            return SyncResult(True, stock=check)
        except SyncError as e:
            return await self._fail(CART, e, subject)

    async def _add_item(self, item: LineItem) -> StockCheck:
        if find(self.state.cart, item.key) is not None:
            raise ValidationError(MSG_CART_DUPLICATE, reason="duplicate")

        self.stock.observe(item)
        check = self.stock.check(item.item_id, item.selected_size, item.quantity)
        if not check.allowed:
            raise StockError(available_stock=check.available_stock)
        if check.status is StockStatus.INSUFFICIENT:
            item = item.with_quantity(check.granted_quantity)

        if self.state.backing is Backing.LOCAL:
            cart = self.state.cart + [item]
            self._save_local(cart=cart)
        else:
            result = await self._remote_call(self.remote.add_item(item))
            cart = result.items if result.items is not None else self.state.cart + [item]

        self._set_cart(cart)
        return check

    async def update_quantity(self, key: Any, new_qty: int) -> SyncResult:
        """
        Set the quantity of an existing line.

        Requests for the same key that arrive while an earlier one is still
        queued are merged: only the latest value is written.
        """
        try:
            key = _coerce_key(key)
            if isinstance(new_qty, bool) or not isinstance(new_qty, int) or new_qty < 1:
                raise ValidationError("quantity must be a positive integer")
        except SyncError as e:
            return await self._fail(CART, e)

        lock_key = ("cart", key)
        self._mark(lock_key)
        try:
            return await self._quantity_writer.submit(key, new_qty)
        finally:
            self._unmark(lock_key)

    async def _write_quantity(self, key: ItemKey, quantity: int) -> SyncResult:
        subject = None
        try:
            async with self._operation(("cart", key)):
                current = find(self.state.cart, key)
                if current is None:
                    raise ValidationError(MSG_CART_NOT_FOUND, reason="not_found")
                subject = current.name or None
                if quantity == current.quantity:
                    return SyncResult(True)

                check = self.stock.check(key.item_id, key.selected_size, quantity)
                if not check.allowed:
                    raise StockError(available_stock=check.available_stock)

                granted = check.granted_quantity
                if granted != current.quantity:
                    if self.state.backing is Backing.LOCAL:
                        cart = _replace(self.state.cart, key, current.with_quantity(granted))
                        self._save_local(cart=cart)
                    else:
                        result = await self._remote_call(self.remote.update_quantity(key, granted))
                        if result.items is not None:
                            cart = result.items
                        else:
                            cart = _replace(self.state.cart, key, current.with_quantity(granted))
                    self._set_cart(cart)
                    logger.debug("Quantity of %s set to %d", sanitize_id_for_logging(key), granted)

            if check.status is StockStatus.INSUFFICIENT:
                self._warn_insufficient(check, subject)
            else:
                self._notify(CART, "updated", subject)
            return SyncResult(True, stock=check)
        except SyncError as e:
            return await self._fail(CART, e, subject)

    async def remove_item(self, key: Any) -> SyncResult:
        """Remove a line. Removing a line that is not there succeeds without a write."""
        subject = None
        try:
            key = _coerce_key(key)
            async with self._operation(("cart", key)):
                current = find(self.state.cart, key)
                if current is None:
                    return SyncResult(True)
                subject = current.name or None

                if self.state.backing is Backing.LOCAL:
                    cart = _without(self.state.cart, key)
                    self._save_local(cart=cart)
                else:
                    result = await bounded(self.remote.remove_item(key), self.timeout)
                    if result.success and result.items is not None:
                        cart = result.items
                    elif result.success or result.status_code == 404:
                        # Already gone server-side
                        cart = _without(self.state.cart, key)
                    else:
                        raise _error_for(result)

                self._set_cart(cart)
                self.stock.forget(key)
            self._notify(CART, "removed", subject)
            return SyncResult(True)
        except SyncError as e:
            return await self._fail(CART, e, subject)

    async def clear(self) -> SyncResult:
        """Empty the cart. Clearing an empty cart is a no-op success."""
        try:
            async with self._operation():
                if not self.state.cart:
                    return SyncResult(True)
                if self.state.backing is Backing.LOCAL:
                    self._save_local(cart=[])
                else:
                    await self._remote_call(self.remote.clear_cart())
                self._set_cart([])
            self._notify(CART, "cleared")
            return SyncResult(True)
        except SyncError as e:
            return await self._fail(CART, e)

    # ==================== WISHLIST ====================

    async def add_to_wishlist(self, entry: Any) -> SyncResult:
        subject = None
        try:
            entry = make_wishlist_entry(entry)
            subject = entry.name or None
            async with self._operation(("wishlist", entry.key)):
                await self._add_wishlist(entry)
            self._notify(WISHLIST, "added", subject)
            return SyncResult(True, in_wishlist=True)
        except SyncError as e:
            return await self._fail(WISHLIST, e, subject)

    async def _add_wishlist(self, entry: WishlistEntry) -> None:
        if find(self.state.wishlist, entry.key) is not None:
            raise ValidationError(MSG_WISHLIST_DUPLICATE, reason="duplicate")

        if self.state.backing is Backing.LOCAL:
            wishlist = self.state.wishlist + [entry]
            self._save_local(wishlist=wishlist)
        else:
            result = await self._remote_call(self.remote.add_wishlist_entry(entry))
            wishlist = result.items if result.items is not None else self.state.wishlist + [entry]
        self._set_wishlist(wishlist)

    async def remove_from_wishlist(self, key: Any) -> SyncResult:
        """Remove an entry. Removing an absent entry is a no-op success."""
        subject = None
        try:
            key = _coerce_key(key)
            async with self._operation(("wishlist", key)):
                current = find(self.state.wishlist, key)
                if current is None:
                    return SyncResult(True, in_wishlist=False)
                subject = current.name or None
                await self._remove_wishlist(key)
            self._notify(WISHLIST, "removed", subject)
            return SyncResult(True, in_wishlist=False)
        except SyncError as e:
            return await self._fail(WISHLIST, e, subject)

    async def _remove_wishlist(self, key: ItemKey) -> None:
        if self.state.backing is Backing.LOCAL:
            wishlist = _without(self.state.wishlist, key)
            self._save_local(wishlist=wishlist)
        else:
            result = await bounded(self.remote.remove_wishlist_entry(key), self.timeout)
            if result.success and result.items is not None:
                wishlist = result.items
            elif result.success or result.status_code == 404:
                wishlist = _without(self.state.wishlist, key)
            else:
                raise _error_for(result)
        self._set_wishlist(wishlist)

    async def toggle_wishlist(self, entry: Any) -> SyncResult:
        """
        Add the entry if absent, remove it if present.

        Membership is read from in-memory state inside the per-key lock, so
        two toggles issued back-to-back always alternate.
        """
        subject = None
        try:
            entry = make_wishlist_entry(entry)
            subject = entry.name or None
            async with self._operation(("wishlist", entry.key)):
                current = find(self.state.wishlist, entry.key)
                if current is None:
                    await self._add_wishlist(entry)
                else:
                    subject = current.name or subject
                    await self._remove_wishlist(entry.key)
            added = current is None
            self._notify(WISHLIST, "added" if added else "removed", subject)
            return SyncResult(True, in_wishlist=added)
        except SyncError as e:
            return await self._fail(WISHLIST, e, subject)

    async def clear_wishlist(self) -> SyncResult:
        try:
            async with self._operation():
                if not self.state.wishlist:
                    return SyncResult(True)
                if self.state.backing is Backing.LOCAL:
                    self._save_local(wishlist=[])
                else:
                    await self._remote_call(self.remote.clear_wishlist())
                self._set_wishlist([])
            self._notify(WISHLIST, "cleared")
            return SyncResult(True)
        except SyncError as e:
            return await self._fail(WISHLIST, e)

    async def move_to_cart(self, key: Any, quantity: int = 1) -> SyncResult:
        """
        Move a wishlist entry into the cart.

        Server-side only: anonymous sessions get a "please login" failure.
        """
        subject = None
        try:
            key = _coerce_key(key)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError("quantity must be a positive integer")
            if self.state.backing is Backing.LOCAL:
                raise ValidationError(MSG_LOGIN_REQUIRED, reason="login_required")

            async with self._operation(("wishlist", key), ("cart", key)):
                if self.state.backing is Backing.LOCAL:
                    raise ValidationError(MSG_LOGIN_REQUIRED, reason="login_required")
                current = find(self.state.wishlist, key)
                if current is None:
                    raise ValidationError("Item is not in your wishlist", reason="not_found")
                subject = current.name or None

                result = await self._remote_call(self.remote.move_to_cart(key, quantity))
                wishlist = result.items if result.items is not None else _without(self.state.wishlist, key)
                self._set_wishlist(wishlist)

                if result.cart_items is not None:
                    self._set_cart(result.cart_items)
                else:
                    cart_result = await bounded(self.remote.fetch_cart(), self.timeout)
                    if cart_result.success and cart_result.items is not None:
                        self._set_cart(cart_result.items)
                    else:
                        logger.warning("Cart not refreshed after move: %s", cart_result.message)

            self._notify(WISHLIST, "moved", subject)
            return SyncResult(True, in_wishlist=False)
        except SyncError as e:
            return await self._fail(WISHLIST, e, subject)


def create_sync_coordinator(
    token_provider: Callable[[], Optional[str]],
    *,
    base_url: str | None = None,
    session_id: str | None = None,
    local: LocalStore | None = None,
) -> SyncCoordinator:
    """
    Build a coordinator wired from configuration.

    Args:
        token_provider: Returns the current bearer token, or None when anonymous
        base_url: Backend URL override (default from CARTSYNC_API_BASE_URL / CARTSYNC_ENV)
        session_id: When given and Upstash is configured, local state lives in Redis under this session
        local: Explicit LocalStore (wins over session_id)
    """
    if local is None:
        from .storage import FileBackend, RedisBackend

        if session_id and config.UPSTASH_REDIS_REST_URL and config.UPSTASH_REDIS_REST_TOKEN:
            from cartsync.db import RedisKeys

            local = LocalStore(RedisBackend(RedisKeys.local_state_key(session_id)))
        else:
            local = LocalStore(FileBackend())
    remote = RemoteStore(token_provider, base_url=base_url)
    return SyncCoordinator(local, remote)
