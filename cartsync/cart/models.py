"""Cart and wishlist models with Decimal-based pricing.

LineItem and WishlistEntry are the only shapes the engine stores. Both are
built through make_line_item / make_wishlist_entry so a malformed payload
is rejected at the boundary, before it reaches any store.
"""
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any, Callable, Literal, NamedTuple, Optional, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from cartsync.errors import ValidationError
from cartsync.services.money import multiply, round_money, to_decimal, total

SNAPSHOT_FIELDS = ("name", "image", "price", "description", "category", "collection")


class ItemKey(NamedTuple):
    """Identity of a cart line item or wishlist entry."""

    item_id: str
    selected_size: Optional[str] = None

    def __str__(self) -> str:
        if self.selected_size is None:
            return self.item_id
        return f"{self.item_id}:{self.selected_size}"


def normalize_size(value: Any) -> Optional[str]:
    """Empty and blank sizes mean "no size"."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def make_key(item_id: Any, selected_size: Any = None) -> ItemKey:
    """Build a normalized key, rejecting an empty item id."""
    if item_id is None or not str(item_id).strip():
        raise ValidationError("item id is required")
    return ItemKey(str(item_id).strip(), normalize_size(selected_size))


def _lift_snapshot(data: Any, fields: tuple[str, ...]) -> Any:
    """Move flat catalog fields (name, image, ...) into a nested snapshot."""
    if not isinstance(data, Mapping):
        return data
    data = dict(data)
    if data.get("snapshot") is None:
        data["snapshot"] = {field: data[field] for field in fields if field in data}
    return data


class ProductSnapshot(BaseModel):
    """Display data captured when the item was added."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = ""
    image: Optional[str] = None
    price: Optional[Decimal] = None
    description: Optional[str] = None
    category: Optional[str] = None
    collection: Optional[str] = None

    @field_validator("price", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        return None if v is None else to_decimal(v)


class _StoredItem(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    item_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("item_id", "itemId", "id", "_id"),
        serialization_alias="itemId",
    )
    selected_size: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("selected_size", "selectedSize", "size"),
        serialization_alias="selectedSize",
    )
    snapshot: ProductSnapshot = Field(default_factory=ProductSnapshot)

    @field_validator("item_id", mode="before")
    @classmethod
    def coerce_item_id(cls, v):
        return v if v is None else str(v).strip()

    @field_validator("selected_size", mode="before")
    @classmethod
    def coerce_size(cls, v):
        return normalize_size(v)

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.item_id, self.selected_size)

    @property
    def name(self) -> str:
        return self.snapshot.name

    def to_dict(self) -> dict:
        """Wire/persisted form (camelCase, Decimal as string)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"kind"})


class LineItem(_StoredItem):
    """Single line in the cart."""

    kind: Literal["cart"] = "cart"
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        validation_alias=AliasChoices("unit_price", "unitPrice", "price"),
        serialization_alias="unitPrice",
    )
    personalization: Optional[str] = None
    available_stock: int = Field(
        ge=0,
        validation_alias=AliasChoices("available_stock", "availableStock", "stock", "stockCount"),
        serialization_alias="availableStock",
    )

    @model_validator(mode="before")
    @classmethod
    def lift_snapshot(cls, data):
        return _lift_snapshot(data, ("name", "image"))

    @field_validator("unit_price", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        if isinstance(v, float):
            return to_decimal(v)
        return v

    @field_validator("personalization", mode="before")
    @classmethod
    def blank_personalization(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def out_of_stock(self) -> bool:
        return self.available_stock == 0

    @property
    def line_total(self) -> Decimal:
        """Total price for all units."""
        return round_money(multiply(self.unit_price, self.quantity))

    def with_quantity(self, quantity: int) -> "LineItem":
        return self.model_copy(update={"quantity": quantity})


class WishlistEntry(_StoredItem):
    """Wishlist membership record. No quantity."""

    kind: Literal["wishlist"] = "wishlist"

    @model_validator(mode="before")
    @classmethod
    def lift_snapshot(cls, data):
        return _lift_snapshot(data, SNAPSHOT_FIELDS)


T = TypeVar("T", LineItem, WishlistEntry)


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "item"
    return f"{location}: {first.get('msg', 'invalid value')}"


def _build(model: type[T], data: Any) -> T:
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        raise ValidationError(f"expected {model.__name__}, got {type(data).__name__}")
    if not isinstance(data, Mapping):
        raise ValidationError(f"{model.__name__} must be built from a mapping")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


def make_line_item(data: Any) -> LineItem:
    """Validate a cart payload and build a LineItem.

    Raises:
        ValidationError: when a required field is missing or out of range
    """
    return _build(LineItem, data)


def make_wishlist_entry(data: Any) -> WishlistEntry:
    """Validate a wishlist payload and build a WishlistEntry.

    Raises:
        ValidationError: when the item id is missing or malformed
    """
    return _build(WishlistEntry, data)


def build_many(raw: Any, factory: Callable[[Any], T]) -> tuple[list[T], list[str]]:
    """
    Build items from a raw list, keeping the first item per key.

    Returns:
        (items, errors) - errors holds one description per rejected element
    """
    if not isinstance(raw, list):
        return [], ["expected a list of items"]

    items: list[T] = []
    errors: list[str] = []
    seen: set[ItemKey] = set()
    for element in raw:
        try:
            item = factory(element)
        except ValidationError as e:
            errors.append(e.message)
            continue
        if item.key in seen:
            errors.append(f"duplicate key {item.key}")
            continue
        seen.add(item.key)
        items.append(item)
    return items, errors


def find(items: Iterable[T], key: ItemKey) -> Optional[T]:
    return next((item for item in items if item.key == key), None)


def cart_subtotal(items: Iterable[LineItem]) -> Decimal:
    """Subtotal of all cart lines, rounded to cents."""
    return total(item.line_total for item in items)


def is_checkout_eligible(items: Iterable[LineItem]) -> bool:
    """A cart can go to checkout when it is non-empty and every line is in stock."""
    items = list(items)
    return bool(items) and all(
        not item.out_of_stock and item.quantity <= item.available_stock for item in items
    )
