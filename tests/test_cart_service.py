"""
Tests for CartManager: end-to-end mutation, reconciliation and persistence
"""
import asyncio
import json
from decimal import Decimal
from unittest.mock import Mock

import pytest

from cartcore.cart import AddStatus, CartAction, CartManager, CartUpdate, get_cart_manager
from cartcore.cart import service as cart_service
from cartcore.services.domains import FavoritesStore

CART_KEY = "cart:user-1"


def cart_writes(mock_redis):
    return [c for c in mock_redis.set.call_args_list if c.args[0] == CART_KEY]


async def settle(manager):
    await manager.wait_idle()
    await manager.persister.writer.wait()


class TestScenarios:
    """Behavioural scenarios for the whole engine."""

    @pytest.mark.asyncio
    async def test_partial_fulfillment(self, manager, notifier):
        """Stock 3, add 5: quantity 3 and a partial signal with available=3."""
        await manager.load()

        result = manager.add("sku-1", 5)
        await manager.wait_idle()

        assert result.status == AddStatus.PARTIAL
        assert result.available == 3
        assert manager.model.get("sku-1").quantity == 3
        notifier.show.assert_called_with("Only 3 left in stock.", "warning")

    @pytest.mark.asyncio
    async def test_merge_reject(self, manager, catalog):
        catalog.upsert({"id": "sku-1", "price": 100, "stock": 4})
        await manager.load()
        assert manager.add("sku-1", 4)
        await manager.wait_idle()

        result = manager.add("sku-1", 1)
        await manager.wait_idle()

        assert result.status == AddStatus.LIMIT_REACHED
        assert manager.model.get("sku-1").quantity == 4

    @pytest.mark.asyncio
    async def test_remove_then_reconcile(self, manager):
        await manager.load()
        for key, qty in (("a", 1), ("b", 2), ("c", 3)):
            manager.add(key, qty)
        await manager.wait_idle()
        updates = []
        manager.subscribe(updates.append)

        assert manager.remove("b")
        await manager.wait_idle()

        assert manager.model.index_of("a") == 0
        assert manager.model.index_of("c") == 1
        update = updates[-1]
        assert "b" in update.changed_ids
        assert update.total_count == 4
        assert update.total_sum == Decimal("100")
        assert manager.rows.ids() == ["a", "c"]

    @pytest.mark.asyncio
    async def test_debounced_persistence(self, storage, catalog, options, mock_redis, redis_store):
        """Three quick quantity changes produce one write with the final state."""
        redis_store[CART_KEY] = json.dumps([{"id": "sku-2", "quantity": 1}])
        options.save_debounce_ms = 50
        manager = CartManager("user-1", lookup=catalog.lookup, storage=storage,
                              options=options, broadcast_storage=False)
        await manager.load()
        mock_redis.set.reset_mock()

        manager.change_qty("sku-2", 2)
        manager.change_qty("sku-2", 3)
        manager.change_qty("sku-2", 4)
        await settle(manager)

        writes = cart_writes(mock_redis)
        assert len(writes) == 1
        assert json.loads(writes[0].args[1])[0]["quantity"] == 4
        manager.close()

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, manager):
        await manager.load()
        manager.add("a")
        manager.add("b")
        await manager.wait_idle()
        patches = manager.rows.patch_count
        rebuilds = manager.rows.rebuild_count

        first = await manager.reconcile()
        second = await manager.reconcile()

        assert manager.rows.patch_count == patches
        assert manager.rows.rebuild_count == rebuilds
        assert first.changed_ids == ()
        assert second.changed_ids == ()

    @pytest.mark.asyncio
    async def test_stock_drop_clamps_on_next_pass(self, manager, catalog):
        await manager.load()
        manager.add("sku-2", 8)
        await manager.wait_idle()

        catalog.upsert({"id": "sku-2", "price": "25.50", "stock": 2})
        update = await manager.reconcile()

        item = manager.model.get("sku-2")
        assert item.quantity == 2
        assert item.stock_limit == 2
        assert "sku-2" in update.changed_ids
        assert manager.reconciler.row_for("sku-2").controls.limit_reached

    @pytest.mark.asyncio
    async def test_mutations_coalesce_into_one_pass(self, manager):
        await manager.load()
        updates = []
        manager.subscribe(updates.append)

        manager.add("a")
        manager.add("b")
        manager.add("c")
        await manager.wait_idle()

        assert len(updates) == 1
        assert set(updates[0].changed_ids) == {"a", "b", "c"}


class TestLoadAndSync:
    """Tests for loading and cross-context reloads."""

    @pytest.mark.asyncio
    async def test_load_drops_bad_entries_and_rebuilds(self, manager, redis_store):
        redis_store[CART_KEY] = json.dumps([
            {"id": "a", "quantity": 2},
            {"bogus": True},
            {"id": "A", "quantity": 1},
        ])

        update = await manager.load()

        assert update.reason == "load"
        assert manager.model.ids() == ["a"]
        assert manager.model.get("a").quantity == 3
        assert manager.rows.ids() == ["a"]
        assert manager.model.get("a").display_name == "Item A"

    @pytest.mark.asyncio
    async def test_load_does_not_write_back(self, manager, mock_redis, redis_store):
        redis_store[CART_KEY] = json.dumps([{"id": "a", "quantity": 1}])

        await manager.load()
        await settle(manager)

        assert cart_writes(mock_redis) == []

    @pytest.mark.asyncio
    async def test_storage_event_from_other_context_reloads(self, manager, redis_store):
        await manager.load()
        manager.add("a")
        await manager.wait_idle()

        redis_store[CART_KEY] = json.dumps([{"id": "b", "quantity": 2}, {"id": "c", "quantity": 1}])
        handled = await manager.handle_storage_event(CART_KEY, origin="other-tab")

        assert handled
        assert manager.model.ids() == ["b", "c"]
        assert manager.rows.ids() == ["b", "c"]
        assert manager.broadcaster.last.reason == "sync"

    @pytest.mark.asyncio
    async def test_own_storage_events_ignored(self, manager):
        await manager.load()

        assert not await manager.handle_storage_event(CART_KEY, origin=manager.origin)

    @pytest.mark.asyncio
    async def test_unrelated_key_ignored(self, manager):
        assert not await manager.handle_storage_event("cart:someone-else", origin="x")

    @pytest.mark.asyncio
    async def test_saves_emit_storage_event(self, storage, catalog, options, mock_redis):
        manager = CartManager("user-1", lookup=catalog.lookup, storage=storage, options=options)
        await manager.load()

        manager.add("a")
        await settle(manager)

        payload = json.loads(mock_redis.xadd.call_args.args[2]["data"])
        assert payload["key"] == CART_KEY
        assert payload["origin"] == manager.origin
        manager.close()


class TestTeardown:
    """Tests for close()."""

    @pytest.mark.asyncio
    async def test_close_flushes_pending_write(self, storage, catalog, options, mock_redis_sync, redis_store):
        options.save_debounce_ms = 10_000
        manager = CartManager("user-1", lookup=catalog.lookup, storage=storage,
                              options=options, broadcast_storage=False)
        await manager.load()
        manager.add("a", 2)
        await manager.wait_idle()
        assert manager.persister.writer.pending

        manager.close()

        assert not manager.persister.writer.pending
        assert json.loads(redis_store[CART_KEY])[0]["quantity"] == 2
        mock_redis_sync.set.assert_called()

    def test_close_twice_is_safe(self, manager):
        manager.close()
        manager.close()

    def test_mutation_without_loop_accumulates(self, manager):
        manager.add("a")
        manager.add("b")

        assert manager.tracker.pending() == {"a", "b"}
        assert manager.broadcaster.last is None


class TestCommands:
    """Tests for quantity commands, selection and dispatch."""

    @pytest.mark.asyncio
    async def test_increment_and_decrement_bounds(self, manager, notifier):
        await manager.load()
        manager.add("sku-1", 2)
        await manager.wait_idle()

        assert manager.increment("sku-1")
        assert not manager.increment("sku-1")
        notifier.show.assert_called_with("You have reached the maximum quantity for this product", "warning")

        assert manager.decrement("sku-1")
        assert manager.decrement("sku-1")
        assert not manager.decrement("sku-1")
        await manager.wait_idle()
        assert manager.model.get("sku-1").quantity == 1

    @pytest.mark.asyncio
    async def test_change_qty_over_stock_notifies(self, manager, notifier):
        await manager.load()
        manager.add("sku-1")

        assert manager.change_qty("sku-1", 10)

        assert manager.model.get("sku-1").quantity == 3
        notifier.show.assert_called_with("Not enough stock. Available: 3.", "warning")
        await manager.wait_idle()

    @pytest.mark.asyncio
    async def test_out_of_stock_add_notifies(self, manager, notifier):
        await manager.load()

        result = manager.add("sold-out")

        assert not result
        notifier.show.assert_called_with("Product is out of stock.", "error")
        assert manager.summary()["line_count"] == 0

    @pytest.mark.asyncio
    async def test_notifier_failure_is_swallowed(self, manager, notifier):
        notifier.show.side_effect = RuntimeError("toast crashed")
        await manager.load()

        assert manager.add("a")
        await manager.wait_idle()

    @pytest.mark.asyncio
    async def test_excluded_items_leave_totals(self, manager):
        await manager.load()
        manager.add("a", 2)
        manager.add("b", 1)
        await manager.wait_idle()

        manager.set_included("b", False)
        await manager.wait_idle()

        update = manager.broadcaster.last
        assert update.total_count == 2
        assert update.total_sum == Decimal("20")
        assert update.included == {"a": True, "b": False}
        assert manager.summary()["selected_count"] == 1

    @pytest.mark.asyncio
    async def test_dispatch(self, manager):
        await manager.load()

        update = await manager.dispatch({"type": "add", "id": "a", "qty": 2})

        assert isinstance(update, CartUpdate)
        assert update.total_count == 2

        update = await manager.dispatch({"type": "QTY_INC", "id": "a"})
        assert update.total_count == 3

        update = await manager.dispatch({"type": "INCLUDE_ALL", "included": False})
        assert update.total_count == 0

        assert await manager.dispatch({"type": "REMOVE", "id": "ghost"}) is None
        assert await manager.dispatch({"type": "EXPLODE"}) is None
        assert await manager.dispatch("ADD") is None

    @pytest.mark.asyncio
    async def test_clear(self, manager):
        await manager.load()
        manager.add("a")
        manager.add("b")
        await manager.wait_idle()

        assert manager.clear()
        await manager.wait_idle()

        update = manager.broadcaster.last
        assert update.reason == "clear"
        assert update.is_empty
        assert set(update.changed_ids) == {"a", "b"}
        assert len(manager.rows) == 0

    @pytest.mark.asyncio
    async def test_favorite_toggle_updates_row(self, storage, catalog, options):
        favorites = FavoritesStore(storage=storage, delay_ms=10)
        manager = CartManager("user-1", lookup=catalog.lookup, storage=storage, favorites=favorites,
                              options=options, broadcast_storage=False)
        await manager.load()
        manager.add("a")
        await manager.wait_idle()
        assert not manager.reconciler.row_for("a").controls.favorite

        update = await manager.dispatch({"type": "FAV_TOGGLE", "id": "a"})

        assert update is not None
        assert favorites.is_favorite("a")
        assert manager.reconciler.row_for("a").controls.favorite
        manager.close()
        favorites.close()


class TestLookupStrategies:
    """Tests for slow and failing lookups through the manager."""

    @pytest.mark.asyncio
    async def test_deferred_lookup_corrected_by_pass(self, storage, options):
        async def fetch(key):
            await asyncio.sleep(0)
            return {"id": key, "price": 4, "stock": 2}

        manager = CartManager("user-1", lookup=fetch, storage=storage,
                              options=options, broadcast_storage=False)
        await manager.load()

        result = manager.add("x", 5)
        assert result.status == AddStatus.DEFERRED
        await manager.wait_idle()

        item = manager.model.get("x")
        assert item.quantity == 2
        assert item.stock_limit == 2
        manager.close()

    @pytest.mark.asyncio
    async def test_failing_lookup_keeps_item(self, storage, options):
        lookup = Mock(side_effect=RuntimeError("catalog offline"))
        manager = CartManager("user-1", lookup=lookup, storage=storage,
                              options=options, broadcast_storage=False)
        await manager.load()

        assert manager.add("x", 2)
        await manager.wait_idle()

        assert manager.model.get("x").quantity == 2
        manager.close()


class TestSingleton:
    """Tests for get_cart_manager."""

    def test_one_manager_per_owner(self, storage, options):
        try:
            first = get_cart_manager("owner-x", storage=storage, options=options)
            second = get_cart_manager("owner-x")

            assert first is second
        finally:
            cart_service._cart_managers.pop("owner-x", None)

    def test_closed_manager_replaced(self, storage, options):
        try:
            first = get_cart_manager("owner-y", storage=storage, options=options)
            first.close()

            second = get_cart_manager("owner-y", storage=storage, options=options)

            assert second is not first
        finally:
            cart_service._cart_managers.pop("owner-y", None)


class TestQueries:
    """Tests for read-only accessors."""

    @pytest.mark.asyncio
    async def test_get_cart_and_summary(self, manager):
        await manager.load()
        manager.add("sku-2", 2)
        await manager.wait_idle()

        cart = manager.get_cart()
        cart[0].quantity = 50

        assert manager.model.get("sku-2").quantity == 2
        summary = manager.summary()
        assert summary["total_count"] == 2
        assert summary["total_sum"] == 51.0
        assert summary["items"][0]["display_name"] == "Mouse"
        assert summary["items"][0]["unit_price"] == 25.5


class TestDirtyTracking:
    """Tests for dirty ids flowing from mutations into passes."""

    def test_model_marks_the_drained_tracker(self, manager):
        assert manager.model.tracker is manager.tracker

    @pytest.mark.asyncio
    async def test_coalesced_mutations_patch_every_row(self, manager):
        await manager.load()
        manager.add("a")
        manager.add("b")
        await manager.wait_idle()

        manager.change_qty("a", 3)
        manager.change_qty("b", 2)
        await manager.wait_idle()

        assert manager.reconciler.row_for("a").content["quantity"] == 3
        assert manager.reconciler.row_for("b").content["quantity"] == 2
        assert set(manager.broadcaster.last.changed_ids) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_mutation_during_pass_lands_in_next_pass(self, storage, catalog, options):
        hooks = []

        async def frame():
            while hooks:
                hooks.pop()()
            await asyncio.sleep(0)

        manager = CartManager("user-1", lookup=catalog.lookup, storage=storage, options=options,
                              frame_scheduler=frame, broadcast_storage=False)
        await manager.load()
        manager.add("a")
        await manager.wait_idle()
        updates = []
        manager.subscribe(updates.append)

        hooks.append(lambda: manager.add("b"))
        manager.change_qty("a", 2)
        await manager.wait_idle()

        assert len(updates) == 2
        assert updates[0].changed_ids == ("a",)
        assert "b" in updates[1].changed_ids
        assert manager.rows.ids() == ["a", "b"]
        assert manager.tracker.pending() == set()
        manager.close()

    @pytest.mark.asyncio
    async def test_first_special_reason_survives_coalescing(self, manager):
        await manager.load()
        manager.add("a")
        await manager.wait_idle()

        manager.clear()
        manager.add("b")
        await manager.wait_idle()

        assert manager.broadcaster.last.reason == "clear"
        assert manager.model.ids() == ["b"]


class TestTeardownSafety:
    """Tests for teardown writes around failed loads and unloaded carts."""

    @pytest.mark.asyncio
    async def test_failed_load_then_close_keeps_stored_cart(self, manager, mock_redis, redis_store):
        stored = json.dumps([{"id": "a", "quantity": 2}])
        redis_store[CART_KEY] = stored
        mock_redis.get.side_effect = ConnectionError("timeout")

        await manager.load()
        manager.close()

        assert redis_store[CART_KEY] == stored

    @pytest.mark.asyncio
    async def test_add_then_close_without_load_is_written(self, manager, redis_store):
        manager.add("a", 2)
        manager.close()

        assert json.loads(redis_store[CART_KEY])[0]["quantity"] == 2


class TestInvalidInput:
    """Tests for caller misuse signals."""

    @pytest.mark.asyncio
    async def test_invalid_add_notifies(self, manager, notifier):
        await manager.load()

        assert not manager.add("", 1)
        notifier.show.assert_called_with("Product id is empty", "error")

        assert not manager.add("a", "lots")
        notifier.show.assert_called_with("Quantity must be a positive integer", "error")
        assert len(manager.model) == 0

    @pytest.mark.asyncio
    async def test_dispatch_accepts_action_members(self, manager):
        await manager.load()

        update = await manager.dispatch({"type": CartAction.ADD, "id": "a", "qty": 2})

        assert update is not None
        assert update.total_count == 2
