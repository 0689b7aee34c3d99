"""Engine configuration read from the environment."""
import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


# Debounce windows (milliseconds)
CART_SAVE_DEBOUNCE_MS = _env_int("CART_SAVE_DEBOUNCE_MS", 250)
FAVORITES_SAVE_DEBOUNCE_MS = _env_int("FAVORITES_SAVE_DEBOUNCE_MS", 200)
INCLUDED_SAVE_DEBOUNCE_MS = _env_int("INCLUDED_SAVE_DEBOUNCE_MS", 150)

# Favorites limits
FAVORITES_MAX = _env_int("FAVORITES_MAX", 0)  # 0 = unbounded
FAVORITES_OVERFLOW = os.environ.get("FAVORITES_OVERFLOW", "reject")  # reject | drop_oldest

# Product lookups
PRODUCT_FETCH_PARALLEL = _env_bool("PRODUCT_FETCH_PARALLEL", True)
PRODUCT_LOOKUP_TIMEOUT = _env_float("PRODUCT_LOOKUP_TIMEOUT", 7.0)  # seconds

# View reconciliation
CART_PARTIAL_PATCHING = _env_bool("CART_PARTIAL_PATCHING", True)
CART_RECHECK_STOCK = _env_bool("CART_RECHECK_STOCK", True)


@dataclass
class CartOptions:
    """Tunables for a CartManager instance."""

    save_debounce_ms: int = 250
    included_save_debounce_ms: int = 150
    parallel_product_fetch: bool = True
    lookup_timeout: float | None = 7.0
    partial_patching: bool = True
    recheck_stock_on_mount: bool = True

    @classmethod
    def from_env(cls) -> "CartOptions":
        return cls(
            save_debounce_ms=CART_SAVE_DEBOUNCE_MS,
            included_save_debounce_ms=INCLUDED_SAVE_DEBOUNCE_MS,
            parallel_product_fetch=PRODUCT_FETCH_PARALLEL,
            lookup_timeout=PRODUCT_LOOKUP_TIMEOUT if PRODUCT_LOOKUP_TIMEOUT > 0 else None,
            partial_patching=CART_PARTIAL_PATCHING,
            recheck_stock_on_mount=CART_RECHECK_STOCK,
        )
