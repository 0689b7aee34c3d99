"""Domain services built on top of storage."""
from .favorites import FavoritesEvent, FavoritesStore, OverflowPolicy

__all__ = [
    "FavoritesEvent",
    "FavoritesStore",
    "OverflowPolicy",
]
