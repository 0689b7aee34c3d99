"""
Rendered row list (the view mount) and the default row builder.

Rows are addressable by normalized id. The reconciler is the only writer;
the rendering collaborator reads rows and their controls.
"""
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from cartcore.services.money import round_money
from .models import LineItem, normalize_id


@dataclass(frozen=True)
class RowControls:
    """Interactive affordances derived from the model, never from the row."""
    min_quantity: int
    max_quantity: int
    quantity: int
    increment_disabled: bool
    decrement_disabled: bool
    out_of_stock: bool
    limit_reached: bool
    favorite: bool = False

    @classmethod
    def for_item(cls, item: LineItem, favorite: bool = False) -> "RowControls":
        stock = item.stock_limit
        return cls(
            min_quantity=1,
            max_quantity=stock,
            quantity=item.quantity,
            increment_disabled=stock <= 0 or item.quantity >= stock,
            decrement_disabled=item.quantity <= 1,
            out_of_stock=stock <= 0,
            limit_reached=stock > 0 and item.quantity == stock,
            favorite=favorite,
        )


@dataclass(eq=False)
class Row:
    """One rendered cart row. Compared by identity."""
    id: str
    content: Any = None
    controls: Optional[RowControls] = None
    version: int = 0

    def __post_init__(self):
        self.id = normalize_id(self.id)


class RowList:
    """Ordered container of rendered rows.

    ``patch_count`` counts single-row writes (append/insert/replace/remove);
    ``rebuild_count`` counts whole-list replacements.
    """

    def __init__(self) -> None:
        self._rows: list[Row] = []
        self.patch_count = 0
        self.rebuild_count = 0

    def __iter__(self) -> Iterator[Row]:
        return iter(list(self._rows))

    def __len__(self) -> int:
        return len(self._rows)

    def ids(self) -> list[str]:
        return [row.id for row in self._rows]

    def find(self, item_id) -> list[Row]:
        """Every row carrying the id (more than one means corruption)."""
        key = normalize_id(item_id)
        return [row for row in self._rows if row.id == key]

    def _position(self, row: Row) -> int:
        for pos, candidate in enumerate(self._rows):
            if candidate is row:
                return pos
        return -1

    def append(self, row: Row) -> None:
        self._rows.append(row)
        self.patch_count += 1

    def insert(self, position: int, row: Row) -> None:
        self._rows.insert(max(0, min(position, len(self._rows))), row)
        self.patch_count += 1

    def replace(self, old: Row, new: Row) -> bool:
        pos = self._position(old)
        if pos < 0:
            return False
        self._rows[pos] = new
        self.patch_count += 1
        return True

    def remove(self, row: Row) -> bool:
        pos = self._position(row)
        if pos < 0:
            return False
        del self._rows[pos]
        self.patch_count += 1
        return True

    def reset(self, rows) -> None:
        self._rows = list(rows)
        self.rebuild_count += 1


class DefaultRowBuilder:
    """Builds a plain content dict for a line item.

    Any object with ``build(item) -> Row | Awaitable[Row]`` can replace it.
    """

    def build(self, item: LineItem) -> Row:
        return Row(
            id=item.id,
            content={
                "id": item.id,
                "displayName": item.display_name,
                "unitPrice": str(item.unit_price),
                "quantity": item.quantity,
                "lineTotal": str(round_money(item.line_total)),
                "imageRef": item.image_ref,
                "specAttributes": dict(item.spec_attributes),
            },
        )
