"""Product Repository - product snapshots for cart refreshes.

All methods use async/await with supabase-py v2.
"""
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from cartcore.logging import get_logger, sanitize_id_for_logging
from cartcore.services.models import ProductSnapshot
from .base import BaseRepository

logger = get_logger(__name__)


class ProductRepository(BaseRepository):
    """Product database reads used by the catalog."""

    async def get_available_count(self, product_id: str) -> int:
        """Get count of available stock items."""
        result = await self.client.table("stock_items").select(
            "id", count="exact"
        ).eq("product_id", product_id).eq("status", "available").execute()

        return result.count or 0

    @staticmethod
    def to_snapshot(row: Dict[str, Any], stock_count: int) -> Optional[ProductSnapshot]:
        """Map a ``products`` row onto a snapshot."""
        try:
            return ProductSnapshot.model_validate({
                "id": row.get("id"),
                "price": row.get("price"),
                "stock_count": stock_count,
                "display_name": row.get("name"),
                "image_url": row.get("image_url"),
                "specs": row.get("specs") or None,
            })
        except ValidationError as e:
            logger.warning(f"Invalid product row: {e.error_count()} validation errors")
            return None

    async def get_snapshot(self, product_id: str) -> Optional[ProductSnapshot]:
        """Get one product with its available stock count."""
        result = await self.client.table("products").select("*").eq("id", product_id).execute()

        if not result.data:
            logger.debug(f"Product {sanitize_id_for_logging(product_id)} not found")
            return None

        stock = await self.get_available_count(product_id)
        return self.to_snapshot(result.data[0], stock)

    async def get_snapshots(self, product_ids: Iterable[str]) -> List[ProductSnapshot]:
        """Get several products in one query (stock counted per product)."""
        ids = list(product_ids)
        if not ids:
            return []

        result = await self.client.table("products").select("*").in_("id", ids).execute()

        snapshots = []
        for row in result.data or []:
            stock = await self.get_available_count(row["id"])
            snapshot = self.to_snapshot(row, stock)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots
