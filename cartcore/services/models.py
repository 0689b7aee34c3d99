"""Product snapshot model returned by stock lookups."""
from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from cartcore.services.money import to_price


class ProductSnapshot(BaseModel):
    """Point-in-time product data used to refresh a cart line.

    Field aliases cover the shapes produced by the catalog backend and by
    older product caches (``stock`` / ``stock_count``, ``fullname`` / ``title``).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "product_id", "productId", "name"))
    price: Decimal = Decimal("0")
    stock_limit: int = Field(
        default=0,
        validation_alias=AliasChoices("stock_limit", "stockLimit", "stock", "stock_count"),
    )
    display_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("display_name", "displayName", "fullname", "title"),
    )
    image_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("image_ref", "imageRef", "image_url", "picture", "image"),
    )
    spec_attributes: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("spec_attributes", "specAttributes", "specs"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def normalize_product_id(cls, v):
        key = str(v if v is not None else "").strip()
        if not key:
            raise ValueError("product id must not be empty")
        return key

    @field_validator("price", mode="before")
    @classmethod
    def convert_price_to_decimal(cls, v):
        return to_price(v)

    @field_validator("stock_limit", mode="before")
    @classmethod
    def clamp_stock(cls, v):
        try:
            stock = int(float(v))
        except (TypeError, ValueError, OverflowError):
            return 0
        return max(0, stock)
