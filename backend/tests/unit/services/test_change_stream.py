"""
Unit tests for change-stream subscriptions and the realtime transport.
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from models.schemas import ChangeEvent
from services.change_stream import (
    ChannelHandle, EvacuationCenterSubscriptions, RealtimeChangeStream, TableWatch,
    core_watches, meta_watches
)

pytestmark = pytest.mark.asyncio


class TestWatches:
    """Test the watched tables and filters per channel."""

    async def test_core_watches(self):
        watches = core_watches(7)

        assert TableWatch("evacuation_registrations", "disaster_evacuation_event_id=eq.7") in watches
        assert TableWatch("evacuation_summaries", "disaster_evacuation_event_id=eq.7") in watches
        assert TableWatch("disaster_evacuation_event", "id=eq.7") in watches
        assert TableWatch("residents") in watches
        assert TableWatch("evacuee_residents") in watches

    async def test_meta_watches(self):
        assert meta_watches(11, 3) == (
            TableWatch("evacuation_center_rooms", "evacuation_center_id=eq.11"),
            TableWatch("evacuation_centers", "id=eq.11"),
            TableWatch("disasters", "id=eq.3"),
        )

    async def test_meta_watches_with_only_disaster(self):
        assert meta_watches(None, 3) == (TableWatch("disasters", "id=eq.3"),)


class TestEvacuationCenterSubscriptions:
    """Test channel lifecycle of the per-view subscription manager."""

    def setup_method(self):
        self.signals = []

    def _subscriptions(self, transport):
        return EvacuationCenterSubscriptions(transport, self.signals.append)

    async def test_start_opens_core_channel(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)

        assert fake_transport.open_names == ["ec-detail-core-7"]
        assert subs.core_key == (7,)
        assert subs.meta_key is None

    async def test_core_change_raises_staleness(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)

        fake_transport.emit("evacuation_registrations")

        assert len(self.signals) == 1
        assert self.signals[0].table == "evacuation_registrations"

    async def test_meta_channel_opens_after_ids_known(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        await subs.update_meta(11, 3)

        assert fake_transport.open_names == ["ec-detail-core-7", "ec-detail-meta-7"]
        fake_transport.emit("evacuation_center_rooms")
        fake_transport.emit("disasters")
        assert [s.table for s in self.signals] == ["evacuation_center_rooms", "disasters"]

    async def test_meta_without_event_is_not_opened(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.update_meta(11, 3)
        assert fake_transport.opened == []

    async def test_unchanged_meta_key_does_not_resubscribe(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        await subs.update_meta(11, 3)
        await subs.update_meta(11, 3)
        await subs.start(7)

        assert len(fake_transport.opened) == 2
        assert fake_transport.closed == []

    async def test_changed_meta_key_reestablishes_channel(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        await subs.update_meta(11, 3)
        old_meta = fake_transport.opened[-1]

        await subs.update_meta(12, 3)

        assert old_meta.closed
        assert subs.meta_key == (7, 12, 3)
        assert fake_transport.opened[-1].watches[0].filter == "evacuation_center_id=eq.12"

    async def test_switching_event_tears_down_both_channels(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        await subs.update_meta(11, 3)

        await subs.start(8)

        assert fake_transport.open_names == ["ec-detail-core-8"]
        assert subs.meta_key is None

    async def test_stop_tears_down_everything(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        await subs.update_meta(11, 3)

        await subs.stop()

        assert fake_transport.open_names == []
        assert subs.core_key is None and subs.meta_key is None

    async def test_stop_tears_down_core_even_if_meta_close_fails(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        await subs.update_meta(11, 3)
        fake_transport.fail_next_close = ConnectionError("socket gone")

        await subs.stop()

        assert fake_transport.open_names == []
        assert len(fake_transport.closed) == 2

    async def test_callbacks_from_replaced_channel_are_dropped(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        _, stale_callback = next(iter(fake_transport.channels.values()))

        await subs.start(8)
        stale_callback(ChangeEvent(table="evacuation_registrations"))

        assert self.signals == []

    async def test_failed_open_leaves_no_key(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        fake_transport.fail_next_open = ConnectionError("refused")

        with pytest.raises(ConnectionError):
            await subs.start(7)

        assert subs.core_key is None
        await subs.start(7)
        assert subs.core_key == (7,)

    async def test_start_without_event_id_is_noop(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(0)
        assert fake_transport.opened == []


class TestSubscriptionInterleaving:
    """Test stop and re-subscription racing an in-flight channel open."""

    def setup_method(self):
        self.signals = []

    def _subscriptions(self, transport):
        return EvacuationCenterSubscriptions(transport, self.signals.append)

    async def test_stop_during_meta_open_closes_the_new_channel(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        fake_transport.open_delay = 0.01

        pending = asyncio.create_task(subs.update_meta(11, 3))
        await asyncio.sleep(0.001)
        await subs.stop()
        await pending

        assert fake_transport.open_names == []
        assert subs.meta_key is None
        assert len(fake_transport.opened) == len(fake_transport.closed) == 2

    async def test_stop_during_core_open_closes_the_new_channel(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        fake_transport.open_delay = 0.01

        pending = asyncio.create_task(subs.start(7))
        await asyncio.sleep(0.001)
        await subs.stop()
        await pending

        assert fake_transport.open_names == []
        assert subs.core_key is None

    async def test_concurrent_meta_updates_open_one_channel(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        fake_transport.open_delay = 0.01

        await asyncio.gather(subs.update_meta(11, 3), subs.update_meta(11, 3))

        assert fake_transport.open_names == ["ec-detail-core-7", "ec-detail-meta-7"]
        assert len(fake_transport.opened) == 2

        await subs.stop()
        assert fake_transport.open_names == []

    async def test_concurrent_meta_updates_keep_the_latest_key(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.start(7)
        fake_transport.open_delay = 0.01

        await asyncio.gather(subs.update_meta(11, 3), subs.update_meta(12, 3))

        assert subs.meta_key == (7, 12, 3)
        assert fake_transport.open_names == ["ec-detail-core-7", "ec-detail-meta-7"]

    async def test_nothing_opens_after_stop(self, fake_transport):
        subs = self._subscriptions(fake_transport)
        await subs.stop()

        await subs.start(7)
        await subs.update_meta(11, 3)

        assert subs.stopped
        assert fake_transport.opened == []


class TestRealtimeChangeStream:
    """Test the websocket transport without a network connection."""

    def setup_method(self):
        self.stream = RealtimeChangeStream("ws://realtime.test/socket", api_key="anon", access_token="jwt")
        self.ws = Mock()
        self.ws.closed = False
        self.ws.send_str = AsyncMock()
        self.stream._ws = self.ws

    def _sent(self):
        return [json.loads(call.args[0]) for call in self.ws.send_str.await_args_list]

    async def test_open_channel_joins_with_postgres_changes_config(self):
        callback = Mock()
        handle = await self.stream.open_channel("ec-detail-core-7", core_watches(7), callback)

        join = self._sent()[0]
        assert join["topic"] == "realtime:ec-detail-core-7"
        assert join["event"] == "phx_join"
        assert join["payload"]["access_token"] == "jwt"
        changes = join["payload"]["config"]["postgres_changes"]
        assert {"event": "*", "schema": "public", "table": "residents"} in changes
        assert {"event": "*", "schema": "public", "table": "disaster_evacuation_event",
                "filter": "id=eq.7"} in changes
        assert isinstance(handle, ChannelHandle)

    async def test_dispatch_reduces_message_to_change_event(self):
        callback = Mock()
        await self.stream.open_channel("ec-detail-core-7", core_watches(7), callback)

        self.stream._dispatch({
            "topic": "realtime:ec-detail-core-7",
            "event": "postgres_changes",
            "payload": {"data": {"table": "evacuation_registrations", "record": {"id": 1}}},
        })

        event = callback.call_args.args[0]
        assert event.table == "evacuation_registrations"
        assert event.filter_key == "disaster_evacuation_event_id=eq.7"

    async def test_dispatch_ignores_unknown_topics_and_tables(self):
        callback = Mock()
        await self.stream.open_channel("ec-detail-core-7", core_watches(7), callback)

        self.stream._dispatch({"topic": "realtime:other", "event": "postgres_changes",
                               "payload": {"data": {"table": "residents"}}})
        self.stream._dispatch({"topic": "realtime:ec-detail-core-7", "event": "postgres_changes",
                               "payload": {"data": {"table": "disasters"}}})

        callback.assert_not_called()

    async def test_close_channel_leaves_and_stops_dispatch(self):
        callback = Mock()
        handle = await self.stream.open_channel("ec-detail-core-7", core_watches(7), callback)

        await self.stream.close_channel(handle)
        self.stream._dispatch({"topic": "realtime:ec-detail-core-7", "event": "postgres_changes",
                               "payload": {"data": {"table": "residents"}}})

        assert self._sent()[-1]["event"] == "phx_leave"
        assert handle.closed
        callback.assert_not_called()

    async def test_refreshed_access_token_is_pushed_to_open_channels(self):
        await self.stream.open_channel("ec-detail-core-7", core_watches(7), Mock())

        await self.stream.update_access_token("fresh-jwt")
        await self.stream.open_channel("ec-detail-meta-7", meta_watches(11, 3), Mock())

        sent = self._sent()
        assert sent[1] == {"topic": "realtime:ec-detail-core-7", "event": "access_token",
                           "payload": {"access_token": "fresh-jwt"}, "ref": sent[1]["ref"]}
        assert sent[2]["event"] == "phx_join"
        assert sent[2]["payload"]["access_token"] == "fresh-jwt"

    async def test_open_channel_after_close_is_refused(self):
        self.ws.close = AsyncMock()
        await self.stream.close()

        with pytest.raises(ConnectionError):
            await self.stream.open_channel("ec-detail-core-7", core_watches(7), Mock())

        self.ws.send_str.assert_not_awaited()

    async def test_connect_after_close_does_not_reconnect(self):
        session = Mock()
        session.closed = False
        session.close = AsyncMock()
        session.ws_connect = AsyncMock()
        self.stream._session = session
        self.ws.close = AsyncMock()
        await self.stream.close()
        self.ws.closed = True

        with pytest.raises(ConnectionError):
            await self.stream.connect()

        session.ws_connect.assert_not_awaited()

    async def test_close_during_connect_drops_the_new_socket(self):
        new_ws = Mock()
        new_ws.closed = False
        new_ws.close = AsyncMock()

        async def connect_while_closing(*args, **kwargs):
            await self.stream.close()
            return new_ws

        session = Mock()
        session.closed = False
        session.close = AsyncMock()
        session.ws_connect = AsyncMock(side_effect=connect_while_closing)
        self.stream._session = session
        self.ws.closed = True

        with pytest.raises(ConnectionError):
            await self.stream.connect()

        new_ws.close.assert_awaited_once()
        assert not self.stream.connected
