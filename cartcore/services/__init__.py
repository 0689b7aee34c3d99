# Services Module
from .catalog import ProductCatalog, get_product_catalog
from .models import ProductSnapshot
from .persistence import DebouncedWriter

__all__ = ["ProductCatalog", "get_product_catalog", "ProductSnapshot", "DebouncedWriter"]
