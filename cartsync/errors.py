"""
Error taxonomy and user-facing message constants.

Message strings live here so the coordinator and the notification layer
render the same wording (SonarQube S1192).
"""

# Cart messages
MSG_CART_ADDED = "{subject} added to cart"
MSG_CART_REMOVED = "{subject} removed from cart"
MSG_CART_UPDATED = "{subject} quantity updated"
MSG_CART_CLEARED = "Cart cleared"
MSG_CART_DUPLICATE = "Item already in cart!"
MSG_CART_NOT_FOUND = "Item is no longer in your cart"

# Wishlist messages
MSG_WISHLIST_ADDED = "{subject} added to wishlist"
MSG_WISHLIST_REMOVED = "{subject} removed from wishlist"
MSG_WISHLIST_CLEARED = "Wishlist cleared successfully"
MSG_WISHLIST_DUPLICATE = "Item already in wishlist!"
MSG_WISHLIST_MOVED = "{subject} moved to cart"
MSG_LOGIN_REQUIRED = "Please login to move items to cart"

# Stock messages
MSG_STOCK_UNAVAILABLE = "{subject} is out of stock"
MSG_STOCK_INSUFFICIENT = "Only {available} of {subject} left in stock"

# Sync / transport messages
MSG_NETWORK = "Network error, please try again"
MSG_TIMEOUT = "The request timed out, please try again"
MSG_CONFLICT = "Your cart changed on the server and has been refreshed"
MSG_STORAGE = "Could not save your cart on this device"
MSG_REMOTE_REJECTED = "The store could not process this request"
MSG_INVALID_ITEM = "Invalid item"
MSG_MERGE_RESTORED = "Your saved items were added to your account"
MSG_MERGE_PARTIAL = "{count} items could not be restored"
MSG_MERGE_FAILED = "Could not sync your saved items, please try again"

DEFAULT_SUBJECT = "Item"


class SyncError(Exception):
    """Base class for every failure the coordinator reports to callers."""

    kind = "error"
    default_message = MSG_REMOTE_REJECTED

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ):
        self.message = message or self.default_message
        self.status_code = status_code
        self.reason = reason or self.kind
        super().__init__(self.message)

    @property
    def has_custom_message(self) -> bool:
        return self.message != self.default_message


class ValidationError(SyncError):
    """Malformed item or argument, rejected before any I/O."""

    kind = "validation"
    default_message = MSG_INVALID_ITEM


class StockError(SyncError):
    """Requested quantity cannot be satisfied from the known stock."""

    kind = "stock"
    default_message = MSG_STOCK_UNAVAILABLE.format(subject=DEFAULT_SUBJECT)

    def __init__(
        self,
        message: str | None = None,
        *,
        available_stock: int = 0,
        reason: str = "unavailable",
    ):
        super().__init__(message, reason=reason)
        self.available_stock = available_stock


class NetworkError(SyncError):
    """Request failed or timed out. State is unchanged and the call is safe to retry."""

    kind = "network"
    default_message = MSG_NETWORK


class ConflictError(SyncError):
    """Server state diverged from ours (item gone, already present, ...)."""

    kind = "conflict"
    default_message = MSG_CONFLICT


class RemoteError(SyncError):
    """Server rejected the request for any other reason."""

    kind = "remote"
    default_message = MSG_REMOTE_REJECTED


class StorageError(SyncError):
    """Local persistence could not be written."""

    kind = "storage"
    default_message = MSG_STORAGE


class CredentialError(RuntimeError):
    """RemoteStore used without a bearer token. Always a programming error."""
