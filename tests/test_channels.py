"""Tests for the push channel manager."""

from unittest.mock import AsyncMock

import pytest

from script_conveyor.channels import ChannelManager, job_key, subject_key
from script_conveyor.channels import manager as events


class TestKeys:
    def test_key_format(self):
        assert subject_key("s1") == "subject:s1"
        assert job_key("job_1") == "job:job_1"


class TestChannelManager:
    """Tests for ChannelManager."""

    @pytest.mark.asyncio
    async def test_subscribe_and_emit(self, channels: ChannelManager, make_sink):
        sink = make_sink()
        await channels.subscribe("subject:s1", sink)

        delivered = await channels.emit("subject:s1", events.STATS, {"written": 1})
        assert delivered == 1
        assert sink.messages == [{"event": "stats", "data": {"written": 1}}]
        assert channels.connection_count == 1

    @pytest.mark.asyncio
    async def test_emit_only_reaches_key(self, channels: ChannelManager, make_sink):
        s1, s2 = make_sink(), make_sink()
        await channels.subscribe("subject:s1", s1)
        await channels.subscribe("subject:s2", s2)

        await channels.emit("subject:s1", events.RUNNING_STATE, {"running": True})
        assert len(s1.messages) == 1
        assert s2.messages == []

    @pytest.mark.asyncio
    async def test_emit_without_subscribers(self, channels: ChannelManager):
        assert await channels.emit("job:missing", events.JOB_ERROR, {}) == 0

    @pytest.mark.asyncio
    async def test_snapshot_sent_on_subscribe(self, channels: ChannelManager, make_sink):
        async def provider(key):
            return [(events.RUNNING_STATE, {"running": False, "key": key})]

        channels.set_snapshot_provider(provider)
        sink = make_sink()
        await channels.subscribe("subject:s1", sink)

        assert sink.messages == [
            {"event": "running_state", "data": {"running": False, "key": "subject:s1"}}
        ]

    @pytest.mark.asyncio
    async def test_closed_snapshot_ends_subscription(self, channels: ChannelManager, make_sink):
        async def provider(key):
            return [
                (events.RUNNING_STATE, {"running": False}),
                (events.CLOSED, {"status": "rejected"}),
            ]

        channels.set_snapshot_provider(provider)
        sink = make_sink()
        await channels.subscribe("job:j1", sink)

        assert sink.messages == [
            {"event": "running_state", "data": {"running": False}},
            {"event": "closed", "data": {"status": "rejected"}},
        ]
        assert sink.closed
        assert not channels.is_subscribed("job:j1", sink)

    @pytest.mark.asyncio
    async def test_failing_sink_is_pruned(self, channels: ChannelManager, make_sink):
        good, bad = make_sink(), make_sink(fail=True)
        await channels.subscribe("subject:s1", good)
        await channels.subscribe("subject:s1", bad)

        delivered = await channels.emit("subject:s1", events.STATS, {})
        assert delivered == 1
        assert channels.subscriber_count("subject:s1") == 1

        # The remaining sink keeps receiving
        await channels.emit("subject:s1", events.STATS, {})
        assert len(good.messages) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe_drops_empty_key(self, channels: ChannelManager, make_sink):
        sink = make_sink()
        await channels.subscribe("job:j1", sink)
        channels.unsubscribe("job:j1", sink)
        channels.unsubscribe("job:j1", sink)

        assert channels.subscriber_count("job:j1") == 0
        assert channels.connection_count == 0

    @pytest.mark.asyncio
    async def test_close_all(self, channels: ChannelManager, make_sink):
        sinks = [make_sink(), make_sink()]
        for sink in sinks:
            await channels.subscribe("job:j1", sink)

        await channels.close_all("job:j1", {"status": "approved"})

        for sink in sinks:
            assert sink.closed
            assert sink.messages[-1] == {"event": "closed", "data": {"status": "approved"}}
        assert channels.subscriber_count("job:j1") == 0
        assert await channels.emit("job:j1", events.STATS, {}) == 0

    @pytest.mark.asyncio
    async def test_works_with_websocket_like_mocks(self, channels: ChannelManager):
        ws = AsyncMock()
        await channels.subscribe("subject:s1", ws)
        await channels.emit("subject:s1", events.LIMIT_REACHED, {"daily_limit": 10})

        ws.send_json.assert_called_once_with({"event": "limit_reached", "data": {"daily_limit": 10}})
