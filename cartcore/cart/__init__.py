"""Cart package: model, reconciliation, storage, and manager facade."""
from .models import AddResult, AddStatus, CartUpdate, LineItem, normalize_id
from .model import CartModel
from .resolver import Deferred, Immediate, RefreshStrategy, StockResolver, Unknown
from .tracker import ChangeTracker
from .view import DefaultRowBuilder, Row, RowControls, RowList
from .reconciler import ReconcileOutcome, ViewReconciler
from .broadcaster import UpdateBroadcaster
from .storage import CartStorage
from .persister import CartPersister
from .included import IncludedStates
from .service import CartAction, CartManager, get_cart_manager

__all__ = [
    "AddResult",
    "AddStatus",
    "CartUpdate",
    "LineItem",
    "normalize_id",
    "CartModel",
    "Deferred",
    "Immediate",
    "RefreshStrategy",
    "StockResolver",
    "Unknown",
    "ChangeTracker",
    "DefaultRowBuilder",
    "Row",
    "RowControls",
    "RowList",
    "ReconcileOutcome",
    "ViewReconciler",
    "UpdateBroadcaster",
    "CartStorage",
    "CartPersister",
    "IncludedStates",
    "CartAction",
    "CartManager",
    "get_cart_manager",
]
