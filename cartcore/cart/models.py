"""Cart models with Decimal-based pricing."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from cartcore.services.money import to_decimal, to_float, to_price

DEFAULT_DISPLAY_NAME = "Product"


def normalize_id(value: Any) -> str:
    """Canonical cart key: trimmed, lower-cased string ("" when missing).

    Mapping-like values (a raw product row, an action payload) are reduced to
    their ``id`` / ``name`` / ``productId`` field first.
    """
    if value is None:
        return ""
    if isinstance(value, Mapping):
        value = value.get("id") or value.get("name") or value.get("productId") or ""
    return str(value).strip().lower()


def _first(data: Mapping, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def _to_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a quantity")
    return int(float(value)) if value is not None else default


@dataclass
class LineItem:
    """Single purchasable entry in the cart."""
    id: str
    display_name: str = ""
    unit_price: Decimal = Decimal("0")
    quantity: int = 1
    stock_limit: int = 0  # 0 = unknown / unavailable until resolved
    image_ref: str = ""
    spec_attributes: dict = field(default_factory=dict)
    included: bool = True

    def __post_init__(self):
        self.id = normalize_id(self.id)
        self.unit_price = to_price(self.unit_price)
        self.quantity = max(1, int(self.quantity))
        self.stock_limit = max(0, int(self.stock_limit))
        if not self.display_name:
            self.display_name = self.id or DEFAULT_DISPLAY_NAME

    @property
    def line_total(self) -> Decimal:
        """Price for all units."""
        return self.unit_price * self.quantity

    @property
    def stock_known(self) -> bool:
        return self.stock_limit > 0

    def copy(self) -> "LineItem":
        """Defensive copy handed to observers."""
        return LineItem(
            id=self.id,
            display_name=self.display_name,
            unit_price=self.unit_price,
            quantity=self.quantity,
            stock_limit=self.stock_limit,
            image_ref=self.image_ref,
            spec_attributes=dict(self.spec_attributes),
            included=self.included,
        )

    def to_dict(self) -> dict:
        """Persisted shape."""
        return {
            "id": self.id,
            "displayName": self.display_name,
            "unitPrice": str(self.unit_price),
            "quantity": self.quantity,
            "imageRef": self.image_ref,
            "stockLimit": self.stock_limit,
            "specAttributes": dict(self.spec_attributes),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "LineItem":
        """Create from a persisted entry.

        Also reads the legacy ``name/fullname/price/qty/stock/picture/specs``
        layout. Raises ValueError/TypeError/KeyError on malformed entries.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"cart entry must be an object, got {type(data).__name__}")

        item_id = normalize_id(_first(data, "id", "name", "productId", "cartId"))
        if not item_id:
            raise KeyError("id")

        quantity = _to_int(_first(data, "quantity", "qty", default=1), default=1)
        specs = _first(data, "specAttributes", "specs", default={})
        if not isinstance(specs, Mapping):
            raise TypeError("specAttributes must be an object")

        return cls(
            id=item_id,
            display_name=str(_first(data, "displayName", "fullname", "title", default="")),
            unit_price=to_decimal(_first(data, "unitPrice", "price", default=0)),
            quantity=max(1, quantity),
            stock_limit=max(0, _to_int(_first(data, "stockLimit", "stock", default=0))),
            image_ref=str(_first(data, "imageRef", "picture", "image", default="")),
            spec_attributes=dict(specs),
        )


class AddStatus(str, Enum):
    """Outcome of CartModel.add."""
    ADDED = "added"
    PARTIAL = "partial"  # added at the clamped quantity
    DEFERRED = "deferred"  # added optimistically, stock still resolving
    OUT_OF_STOCK = "out_of_stock"
    LIMIT_REACHED = "limit_reached"  # merge would exceed stock, nothing changed
    INVALID = "invalid"


@dataclass(frozen=True)
class AddResult:
    """Result of an add, carrying stock signals for the caller."""
    status: AddStatus
    item_id: str = ""
    quantity: int = 0  # resulting line quantity
    available: Optional[int] = None  # known stock when a stock signal fired

    @property
    def accepted(self) -> bool:
        return self.status in (AddStatus.ADDED, AddStatus.PARTIAL, AddStatus.DEFERRED)

    @property
    def partial(self) -> bool:
        return self.status == AddStatus.PARTIAL

    def __bool__(self) -> bool:
        return self.accepted


@dataclass(frozen=True)
class CartUpdate:
    """Consolidated summary published once per reconciliation pass."""
    items: tuple
    total_count: int
    total_sum: Decimal
    changed_ids: tuple
    reason: str = "update"
    target_id: Optional[str] = None
    included: Mapping = field(default_factory=dict)
    fallback: bool = False
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            object.__setattr__(self, "created_at", datetime.now(timezone.utc).isoformat())

    @property
    def is_empty(self) -> bool:
        return not self.items

    def to_dict(self) -> dict:
        """Event payload for external observers."""
        return {
            "items": [item.to_dict() for item in self.items],
            "totalCount": self.total_count,
            "totalSum": to_float(self.total_sum),
            "changedIds": list(self.changed_ids),
            "reason": self.reason,
            "targetId": self.target_id,
            "included": dict(self.included),
        }
