"""Tests for NotificationRouter and CallbackList."""

from __future__ import annotations

from unittest.mock import MagicMock

from klf_gateway.events import CallbackList
from klf_gateway.notifications import NotificationRouter
from klf_gateway.protocol import KlfRecord
from klf_gateway.registry import KlfOpcode


def notification(opcode: int) -> KlfRecord:
    return KlfRecord(
        id=0, opcode=opcode, name=KlfOpcode(opcode).name, checksum_valid=True
    )


class TestCallbackList:
    """Tests for CallbackList."""

    def test_fire_in_order(self):
        """Test listeners run in registration order."""
        calls = []
        listeners: CallbackList[[int]] = CallbackList("test")
        listeners.add(lambda value: calls.append(("a", value)))
        listeners.add(lambda value: calls.append(("b", value)))

        listeners.fire(1)

        assert calls == [("a", 1), ("b", 1)]

    def test_remove(self):
        """Test the returned function unregisters the listener."""
        listeners: CallbackList[[]] = CallbackList("test")
        callback = MagicMock()
        remove = listeners.add(callback)

        remove()
        remove()
        listeners.fire()

        callback.assert_not_called()
        assert len(listeners) == 0

    def test_listener_error_isolated(self):
        """Test a raising listener does not stop the others."""
        listeners: CallbackList[[]] = CallbackList("test")
        listeners.add(MagicMock(side_effect=RuntimeError("boom")))
        after = MagicMock()
        listeners.add(after)

        listeners.fire()

        after.assert_called_once_with()


class TestNotificationRouter:
    """Tests for NotificationRouter."""

    def test_generic_subscriber_receives_all(self):
        """Test subscribers without opcode see every notification."""
        router = NotificationRouter()
        callback = MagicMock()
        router.subscribe(callback)

        router.dispatch(notification(KlfOpcode.GW_ERROR_NTF))
        router.dispatch(notification(KlfOpcode.GW_SESSION_FINISHED_NTF))

        assert callback.call_count == 2

    def test_opcode_subscriber_filtered(self):
        """Test opcode subscribers only see their opcode."""
        router = NotificationRouter()
        position = MagicMock()
        router.subscribe(position, KlfOpcode.GW_NODE_STATE_POSITION_CHANGED_NTF)

        router.dispatch(notification(KlfOpcode.GW_ERROR_NTF))
        record = notification(KlfOpcode.GW_NODE_STATE_POSITION_CHANGED_NTF)
        router.dispatch(record)

        position.assert_called_once_with(record)

    def test_generic_before_specific(self):
        """Test generic subscribers run before opcode subscribers."""
        router = NotificationRouter()
        order = []
        router.subscribe(lambda _r: order.append("specific"), KlfOpcode.GW_ERROR_NTF)
        router.subscribe(lambda _r: order.append("generic"))

        router.dispatch(notification(KlfOpcode.GW_ERROR_NTF))

        assert order == ["generic", "specific"]

    def test_unsubscribe(self):
        """Test unsubscribed callbacks are no longer invoked."""
        router = NotificationRouter()
        callback = MagicMock()
        unsubscribe = router.subscribe(callback, KlfOpcode.GW_ERROR_NTF)

        unsubscribe()
        router.dispatch(notification(KlfOpcode.GW_ERROR_NTF))

        callback.assert_not_called()

    def test_unknown_opcode_subscription(self):
        """Test subscribing to an unregistered numeric opcode."""
        router = NotificationRouter()
        callback = MagicMock()
        router.subscribe(callback, 0x7777)
        record = KlfRecord(id=0, opcode=0x7777, checksum_valid=True)

        router.dispatch(record)

        callback.assert_called_once_with(record)

    def test_subscriber_error_isolated(self):
        """Test a raising subscriber does not block delivery."""
        router = NotificationRouter()
        router.subscribe(MagicMock(side_effect=ValueError("bad")))
        callback = MagicMock()
        router.subscribe(callback)

        router.dispatch(notification(KlfOpcode.GW_ERROR_NTF))

        callback.assert_called_once()
