#!/usr/bin/env python3
"""
Tests for the fan-out publisher.

Run with: pytest tests/test_fanout.py -v
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fanout import FanoutPublisher


def _socket(send_side_effect=None):
    websocket = AsyncMock()
    websocket.send_json = AsyncMock(side_effect=send_side_effect)
    return websocket


class TestFanoutPublisher:

    @pytest.mark.asyncio
    async def test_broadcast_to_all_clients(self):
        fanout = FanoutPublisher()
        a, b = _socket(), _socket()
        await fanout.connect(a)
        await fanout.connect(b)

        fanout.publish("alert_deleted", {"id": "alert-1"})
        await fanout.drain()

        expected = {"event": "alert_deleted", "data": {"id": "alert-1"}}
        a.send_json.assert_awaited_once_with(expected)
        b.send_json.assert_awaited_once_with(expected)
        a.accept.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_socket_is_dropped(self):
        fanout = FanoutPublisher()
        broken = _socket(send_side_effect=RuntimeError("closed"))
        healthy = _socket()
        await fanout.connect(broken)
        await fanout.connect(healthy)

        fanout.publish("alert_resolved", {"id": "a"})
        fanout.publish("alert_resolved", {"id": "b"})
        await fanout.drain()

        assert fanout.connection_count == 1
        assert broken.send_json.await_count == 1
        assert healthy.send_json.await_count == 2

    @pytest.mark.asyncio
    async def test_slow_socket_times_out(self):
        async def stall(message):
            await asyncio.sleep(5)

        fanout = FanoutPublisher(send_timeout_s=0.05)
        await fanout.connect(_socket(send_side_effect=stall))

        fanout.publish("drone_telemetry", {"droneId": "DRONE-1"})
        await fanout.drain()

        assert fanout.connection_count == 0

    @pytest.mark.asyncio
    async def test_publish_order_is_preserved(self):
        fanout = FanoutPublisher()
        seen = []
        fanout.add_listener(lambda event, payload: seen.append(payload["n"]))

        for n in range(5):
            fanout.publish("drone_telemetry", {"n": n})
        await fanout.drain()

        assert seen == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self):
        fanout = FanoutPublisher()
        seen = []

        def explode(event, payload):
            raise ValueError("boom")

        fanout.add_listener(explode)
        fanout.add_listener(lambda event, payload: seen.append(event))

        fanout.publish("mission_started", {})
        await fanout.drain()

        assert seen == ["mission_started"]

    def test_publish_without_event_loop_is_a_no_op(self):
        fanout = FanoutPublisher()
        fanout.publish("alert_active", {"id": "x"})
        assert fanout.stats["published"] == 0

    @pytest.mark.asyncio
    async def test_disconnect(self):
        fanout = FanoutPublisher()
        websocket = _socket()
        await fanout.connect(websocket)
        fanout.disconnect(websocket)
        fanout.disconnect(websocket)

        fanout.publish("alert_deleted", {"id": "a"})
        await fanout.drain()

        websocket.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_closes_clients(self):
        fanout = FanoutPublisher()
        websocket = _socket()
        await fanout.connect(websocket)
        fanout.publish("alert_deleted", {"id": "a"})

        await fanout.close()

        websocket.send_json.assert_awaited_once()
        websocket.close.assert_awaited_once()
        assert fanout.connection_count == 0
