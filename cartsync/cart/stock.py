"""Point-in-time stock checks against the last known availability."""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from cartsync.errors import ValidationError
from .models import ItemKey, LineItem, make_key


class StockStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT = "insufficient"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class StockCheck:
    """Result of a stock check.

    granted_quantity is what may be written: the requested quantity when
    status is OK, the available stock when INSUFFICIENT, 0 when UNAVAILABLE.
    """

    status: StockStatus
    available_stock: int
    granted_quantity: int

    @property
    def allowed(self) -> bool:
        return self.status is not StockStatus.UNAVAILABLE


class StockValidator:
    """
    Checks quantities against cached per-key stock snapshots.

    The cache is fed from item data: every LineItem the backing store
    returns carries its available_stock, so no extra round trip is made on
    each quantity click. Snapshots are only as fresh as the last write or
    fetch; nothing refreshes them on a timer.
    """

    def __init__(self):
        self._snapshots: dict[ItemKey, int] = {}

    def observe(self, item: LineItem) -> None:
        """Record the stock carried on a single item."""
        self._snapshots[item.key] = item.available_stock

    def refresh(self, items: Iterable[LineItem]) -> None:
        """Update snapshots from freshly loaded items."""
        for item in items:
            self.observe(item)

    def forget(self, key: ItemKey) -> None:
        self._snapshots.pop(key, None)

    def reset(self) -> None:
        self._snapshots.clear()

    def snapshot(self, key: ItemKey) -> Optional[int]:
        return self._snapshots.get(key)

    def check(self, item_id: str, selected_size: Optional[str], requested_qty: int) -> StockCheck:
        """
        Check a requested quantity against the known stock.

        Args:
            item_id: Catalog item id
            selected_size: Size variant, or None
            requested_qty: Quantity the shopper asked for (>= 1)

        Returns:
            StockCheck with the status and the quantity that may be written

        Raises:
            ValidationError: requested_qty is not a positive integer
        """
        if isinstance(requested_qty, bool) or not isinstance(requested_qty, int) or requested_qty < 1:
            raise ValidationError("quantity must be a positive integer")

        available = self._snapshots.get(make_key(item_id, selected_size))
        if not available:
            # Unknown stock is treated like no stock
            return StockCheck(StockStatus.UNAVAILABLE, 0, 0)
        if requested_qty > available:
            return StockCheck(StockStatus.INSUFFICIENT, available, available)
        return StockCheck(StockStatus.OK, available, requested_qty)
