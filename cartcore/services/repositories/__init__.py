"""
Repository Pattern for Database Operations

- ProductRepository: product rows plus available stock counts
"""
from .product_repo import ProductRepository

__all__ = [
    "ProductRepository",
]
