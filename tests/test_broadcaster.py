"""
Tests for the update broadcaster
"""
from decimal import Decimal
from unittest.mock import Mock

from cartcore.cart import CartUpdate, UpdateBroadcaster


def make_update(**overrides):
    data = dict(items=(), total_count=0, total_sum=Decimal("0"), changed_ids=())
    data.update(overrides)
    return CartUpdate(**data)


class TestUpdateBroadcaster:
    """Tests for UpdateBroadcaster."""

    def test_publish_reaches_every_subscriber(self):
        broadcaster = UpdateBroadcaster()
        first, second = Mock(), Mock()
        broadcaster.subscribe(first)
        broadcaster.subscribe(second)
        update = make_update(total_count=2)

        assert broadcaster.publish(update) == 2

        first.assert_called_once_with(update)
        second.assert_called_once_with(update)
        assert broadcaster.last is update

    def test_unsubscribe(self):
        broadcaster = UpdateBroadcaster()
        callback = Mock()
        unsubscribe = broadcaster.subscribe(callback)

        unsubscribe()
        unsubscribe()
        broadcaster.publish(make_update())

        callback.assert_not_called()
        assert len(broadcaster) == 0

    def test_failing_subscriber_does_not_block_others(self):
        broadcaster = UpdateBroadcaster()
        broken = Mock(side_effect=RuntimeError("badge crashed"))
        healthy = Mock()
        broadcaster.subscribe(broken)
        broadcaster.subscribe(healthy)

        delivered = broadcaster.publish(make_update())

        assert delivered == 1
        healthy.assert_called_once()

    def test_clear(self):
        broadcaster = UpdateBroadcaster()
        callback = Mock()
        broadcaster.subscribe(callback)

        broadcaster.clear()
        broadcaster.publish(make_update())

        callback.assert_not_called()
