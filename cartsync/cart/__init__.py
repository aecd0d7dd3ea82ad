"""Cart package: models, local/remote stores, stock checks, merge and the sync facade."""
from .models import ItemKey, LineItem, WishlistEntry, make_line_item, make_wishlist_entry
from .storage import FileBackend, LocalStore, RedisBackend
from .remote import RemoteResult, RemoteStore
from .stock import StockCheck, StockStatus, StockValidator
from .merge import MergeCoordinator, MergeReport
from .service import Backing, SyncCoordinator, SyncResult, SyncState, create_sync_coordinator

__all__ = [
    "ItemKey",
    "LineItem",
    "WishlistEntry",
    "make_line_item",
    "make_wishlist_entry",
    "FileBackend",
    "LocalStore",
    "RedisBackend",
    "RemoteResult",
    "RemoteStore",
    "StockCheck",
    "StockStatus",
    "StockValidator",
    "MergeCoordinator",
    "MergeReport",
    "Backing",
    "SyncCoordinator",
    "SyncResult",
    "SyncState",
    "create_sync_coordinator",
]
