"""cartsync - cart and wishlist synchronization between local and account storage."""

__version__ = "0.1.0"
