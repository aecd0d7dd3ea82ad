"""Login-time merge of the anonymous local cart into the account cart.

Policy:
- keys already present remotely keep the remote quantity (local is dropped)
- every add is independent, one failure never aborts the rest
- LocalStore is cleared once all adds were attempted, merged or not
"""
import asyncio
from dataclasses import dataclass, field
from typing import Optional

from cartsync import config
from cartsync.logging import get_logger, sanitize_id_for_logging
from .models import ItemKey, LineItem, WishlistEntry
from .remote import ErrorKind, RemoteResult, RemoteStore, bounded
from .storage import LocalStore

logger = get_logger(__name__)


@dataclass
class MergeReport:
    """What the merge did.

    completed is False only when the remote could not be read up front; in
    that case nothing was written and LocalStore was left untouched.
    """

    completed: bool
    cart: list[LineItem] = field(default_factory=list)
    wishlist: list[WishlistEntry] = field(default_factory=list)
    merged: list[ItemKey] = field(default_factory=list)
    skipped: list[ItemKey] = field(default_factory=list)
    failed: list[ItemKey] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def failed_count(self) -> int:
        return len(self.failed)


def _already_present(result: RemoteResult) -> bool:
    return result.error_kind is ErrorKind.CONFLICT and result.status_code == 409


class MergeCoordinator:
    """
    Drains LocalStore into RemoteStore, once.

    A MergeCoordinator instance represents a single login event: calling
    run() again (or concurrently) returns the same report instead of
    merging twice.
    """

    def __init__(self, local: LocalStore, remote: RemoteStore, timeout: float | None = None):
        self.local = local
        self.remote = remote
        self.timeout = config.REQUEST_TIMEOUT if timeout is None else timeout
        self._task: Optional[asyncio.Future] = None

    async def run(self) -> MergeReport:
        if self._task is None:
            self._task = asyncio.ensure_future(self._merge())
        return await asyncio.shield(self._task)

    async def _fetch_remote(self) -> tuple[RemoteResult, RemoteResult]:
        return await asyncio.gather(
            bounded(self.remote.fetch_cart(), self.timeout),
            bounded(self.remote.fetch_wishlist(), self.timeout),
        )

    async def _merge(self) -> MergeReport:
        cart_result, wishlist_result = await self._fetch_remote()
        for result in (cart_result, wishlist_result):
            if not result.success:
                logger.warning("Merge aborted, remote unreadable: %s", result.message)
                return MergeReport(completed=False, message=result.message)

        report = MergeReport(
            completed=True,
            cart=list(cart_result.items or []),
            wishlist=list(wishlist_result.items or []),
        )
        local = self.local.load()

        remote_keys = {item.key for item in report.cart}
        for item in local.cart:
            if item.key in remote_keys:
                report.skipped.append(item.key)
                continue
            result = await bounded(self.remote.add_item(item), self.timeout)
            if result.success:
                report.merged.append(item.key)
                remote_keys.add(item.key)
                if result.items is not None:
                    report.cart = result.items
            elif _already_present(result):
                report.skipped.append(item.key)
            else:
                logger.warning(
                    "Could not restore cart item %s: %s",
                    sanitize_id_for_logging(item.key),
                    result.message,
                )
                report.failed.append(item.key)

        remote_keys = {entry.key for entry in report.wishlist}
        for entry in local.wishlist:
            if entry.key in remote_keys:
                report.skipped.append(entry.key)
                continue
            result = await bounded(self.remote.add_wishlist_entry(entry), self.timeout)
            if result.success:
                report.merged.append(entry.key)
                remote_keys.add(entry.key)
                if result.items is not None:
                    report.wishlist = result.items
            elif _already_present(result):
                report.skipped.append(entry.key)
            else:
                logger.warning(
                    "Could not restore wishlist entry %s: %s",
                    sanitize_id_for_logging(entry.key),
                    result.message,
                )
                report.failed.append(entry.key)

        # Unconditional: failed items are not retried on a later login
        if not self.local.clear():
            logger.error("Local state could not be cleared after merge")

        if report.merged:
            cart_result, wishlist_result = await self._fetch_remote()
            if cart_result.success and cart_result.items is not None:
                report.cart = cart_result.items
            if wishlist_result.success and wishlist_result.items is not None:
                report.wishlist = wishlist_result.items

        logger.info(
            "Merge finished: %d merged, %d kept remote, %d failed",
            len(report.merged),
            len(report.skipped),
            report.failed_count,
        )
        return report
