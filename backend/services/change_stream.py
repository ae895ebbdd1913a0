"""
Change-stream subscription for one evacuation-center event view.

The backend publishes table-level change notifications. This module turns
them into staleness signals: every notification means "invalidate and
refetch", its payload is never applied as a patch.

Two channels are kept per view:

* core: registrations, residents, family memberships, summaries and the
  event row itself. Opened as soon as the event id is known.
* meta: rooms and the center row (filtered by the physical center id) and
  the parent disaster row. Opened once a first load has revealed those ids
  and re-opened whenever they change.
"""

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp
import structlog

from models.schemas import ChangeEvent

logger = structlog.get_logger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class TableWatch:
    """One watched table with an optional row filter (``column=eq.value``)."""
    table: str
    filter: Optional[str] = None


@dataclass
class ChannelHandle:
    """An open channel on a transport."""
    name: str
    watches: Tuple[TableWatch, ...]
    token: int = 0
    topic: str = ""
    closed: bool = False


def core_watches(center_event_id: int) -> Tuple[TableWatch, ...]:
    event_filter = f"disaster_evacuation_event_id=eq.{center_event_id}"
    return (
        TableWatch("evacuation_registrations", event_filter),
        TableWatch("residents"),
        TableWatch("evacuee_residents"),
        TableWatch("evacuation_summaries", event_filter),
        TableWatch("disaster_evacuation_event", f"id=eq.{center_event_id}"),
    )


def meta_watches(evacuation_center_id: Optional[int], disaster_id: Optional[int]) -> Tuple[TableWatch, ...]:
    watches: List[TableWatch] = []
    if evacuation_center_id:
        watches.append(TableWatch("evacuation_center_rooms", f"evacuation_center_id=eq.{evacuation_center_id}"))
        watches.append(TableWatch("evacuation_centers", f"id=eq.{evacuation_center_id}"))
    if disaster_id:
        watches.append(TableWatch("disasters", f"id=eq.{disaster_id}"))
    return tuple(watches)


class ChangeStreamTransport:
    """A change-notification stream that can open and close filtered channels."""

    async def open_channel(
        self,
        name: str,
        watches: Tuple[TableWatch, ...],
        on_change: ChangeCallback
    ) -> ChannelHandle:
        raise NotImplementedError

    async def close_channel(self, handle: ChannelHandle) -> None:
        raise NotImplementedError

    async def update_access_token(self, token: Optional[str]) -> None:
        """Apply a refreshed credential to open and future channels."""

    async def close(self) -> None:
        """Release the underlying connection."""


class RealtimeChangeStream(ChangeStreamTransport):
    """Websocket client for a Phoenix-style realtime ``postgres_changes`` channel."""

    RECONNECT_MAX_SECONDS = 30.0

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        heartbeat_seconds: int = 30,
        schema: str = "public",
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.url = url
        self.api_key = api_key
        self.access_token = access_token or api_key
        self.heartbeat_seconds = heartbeat_seconds
        self.schema = schema
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._channels: Dict[str, Tuple[ChannelHandle, ChangeCallback]] = {}
        self._refs = itertools.count(1)
        self._tokens = itertools.count(1)
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._reconnector: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        async with self._connect_lock:
            if self._closing:
                raise ConnectionError("Realtime stream is closed")
            if self.connected:
                return
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            params = {"vsn": "1.0.0"}
            if self.api_key:
                params["apikey"] = self.api_key
            ws = await self._session.ws_connect(self.url, params=params, heartbeat=None)
            if self._closing:
                await ws.close()
                raise ConnectionError("Realtime stream is closed")
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop())
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())
            logger.info("Realtime stream connected", url=self.url)

    async def open_channel(self, name, watches, on_change):
        await self.connect()
        handle = ChannelHandle(
            name=name,
            watches=tuple(watches),
            token=next(self._tokens),
            topic=f"realtime:{name}"
        )
        self._channels[handle.topic] = (handle, on_change)
        try:
            await self._join(handle)
        except (aiohttp.ClientError, ConnectionError, RuntimeError):
            self._channels.pop(handle.topic, None)
            handle.closed = True
            raise
        logger.info("Channel opened", channel=name, tables=[w.table for w in handle.watches])
        return handle

    async def close_channel(self, handle):
        current = self._channels.get(handle.topic)
        if current and current[0].token == handle.token:
            del self._channels[handle.topic]
        if handle.closed:
            return
        handle.closed = True
        if self.connected:
            await self._send(handle.topic, "phx_leave", {})
        logger.info("Channel closed", channel=handle.name)

    async def update_access_token(self, token):
        self.access_token = token or self.api_key
        if not self.connected or not self.access_token:
            return
        for handle, _ in list(self._channels.values()):
            await self._send(handle.topic, "access_token", {"access_token": self.access_token})

    async def close(self) -> None:
        self._closing = True
        for task in (self._heartbeat, self._reader, self._reconnector):
            if task and not task.done():
                task.cancel()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._channels.clear()

    async def _join(self, handle: ChannelHandle) -> None:
        config = {
            "postgres_changes": [
                {
                    "event": "*",
                    "schema": self.schema,
                    "table": watch.table,
                    **({"filter": watch.filter} if watch.filter else {})
                }
                for watch in handle.watches
            ]
        }
        payload = {"config": config}
        if self.access_token:
            payload["access_token"] = self.access_token
        await self._send(handle.topic, "phx_join", payload)

    async def _send(self, topic: str, event: str, payload: dict) -> None:
        if not self.connected:
            raise ConnectionError("Realtime stream is not connected")
        message = {"topic": topic, "event": event, "payload": payload, "ref": str(next(self._refs))}
        await self._ws.send_str(json.dumps(message))

    async def _heartbeat_loop(self) -> None:
        while self.connected:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                await self._send("phoenix", "heartbeat", {})
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.warning("Realtime heartbeat failed", error=str(e))
                return

    async def _read_loop(self) -> None:
        ws = self._ws
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    self._dispatch(json.loads(msg.data))
                except ValueError:
                    logger.warning("Discarding malformed realtime message")
            elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                break
        if not self._closing:
            logger.warning("Realtime stream disconnected", close_code=ws.close_code)
            self._reconnector = asyncio.create_task(self._reconnect())

    def _dispatch(self, message: dict) -> None:
        topic = message.get("topic")
        event = message.get("event")
        if event == "phx_reply" and message.get("payload", {}).get("status") == "error":
            logger.error("Realtime channel rejected", topic=topic, response=message["payload"].get("response"))
            return
        if event != "postgres_changes" or topic not in self._channels:
            return
        handle, on_change = self._channels[topic]
        table = (message.get("payload") or {}).get("data", {}).get("table")
        watch = next((w for w in handle.watches if w.table == table), None)
        if watch is None:
            return
        on_change(ChangeEvent(table=watch.table, filter_key=watch.filter))

    async def _reconnect(self) -> None:
        delay = 1.0
        while not self._closing:
            try:
                await self.connect()
                break
            except (aiohttp.ClientError, OSError) as e:
                logger.warning("Realtime reconnect failed", error=str(e), retry_in=delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.RECONNECT_MAX_SECONDS)
        if self._closing:
            return
        for handle, on_change in list(self._channels.values()):
            try:
                await self._join(handle)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.error("Failed to rejoin channel", channel=handle.name, error=str(e))
                continue
            # Changes may have been missed while disconnected.
            on_change(ChangeEvent(table=handle.watches[0].table, filter_key=handle.watches[0].filter))


@dataclass
class _Subscription:
    key: Optional[tuple] = None
    handle: Optional[ChannelHandle] = None
    generation: int = 0
    tables: List[str] = field(default_factory=list)


class EvacuationCenterSubscriptions:
    """
    Subscription manager owned by a single view instance.

    Each channel is re-established when its identifying key changes and torn
    down on ``stop()``. Callbacks from a channel that has since been replaced
    or closed are dropped. ``start``, ``update_meta`` and ``stop`` run one at
    a time; once stopped the manager opens nothing further.
    """

    def __init__(self, transport: ChangeStreamTransport, on_stale: ChangeCallback):
        self.transport = transport
        self.on_stale = on_stale
        self._core = _Subscription()
        self._meta = _Subscription()
        self._center_event_id: Optional[int] = None
        self._lock = asyncio.Lock()
        self._stopped = False

    @property
    def core_key(self) -> Optional[tuple]:
        return self._core.key

    @property
    def meta_key(self) -> Optional[tuple]:
        return self._meta.key

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def start(self, center_event_id: int) -> None:
        """Open (or re-open) the core channel for an evacuation-center event."""
        if not center_event_id or self._stopped:
            return
        key = (center_event_id,)
        async with self._lock:
            if self._stopped or (self._core.key == key and self._core.handle is not None):
                return
            if self._center_event_id != center_event_id:
                await self._teardown(self._meta)
            self._center_event_id = center_event_id
            await self._establish(self._core, key, f"ec-detail-core-{center_event_id}",
                                  core_watches(center_event_id))

    async def update_meta(self, evacuation_center_id: Optional[int], disaster_id: Optional[int]) -> None:
        """Open, re-open or drop the meta channel after a load revealed its ids."""
        if self._stopped:
            return
        async with self._lock:
            if self._stopped:
                return
            if not self._center_event_id or not (evacuation_center_id or disaster_id):
                await self._teardown(self._meta)
                return
            key = (self._center_event_id, evacuation_center_id, disaster_id)
            if self._meta.key == key and self._meta.handle is not None:
                return
            await self._establish(
                self._meta,
                key,
                f"ec-detail-meta-{self._center_event_id}",
                meta_watches(evacuation_center_id, disaster_id)
            )

    async def stop(self) -> None:
        """Tear down both channels unconditionally."""
        self._stopped = True
        async with self._lock:
            try:
                await self._teardown(self._meta)
            finally:
                await self._teardown(self._core)
                self._center_event_id = None

    async def _establish(self, sub: _Subscription, key: tuple, name: str, watches: Tuple[TableWatch, ...]) -> None:
        await self._teardown(sub)
        sub.generation += 1
        generation = sub.generation

        def forward(event: ChangeEvent) -> None:
            if sub.generation != generation:
                return
            logger.debug("Change notification", channel=name, table=event.table, filter=event.filter_key)
            self.on_stale(event)

        handle = await self.transport.open_channel(name, watches, forward)
        if self._stopped or sub.generation != generation:
            logger.info("Discarding channel opened after stop", channel=name)
            await self._close_handle(handle)
            return
        sub.handle = handle
        sub.key = key
        sub.tables = [w.table for w in watches]

    async def _teardown(self, sub: _Subscription) -> None:
        handle = sub.handle
        sub.handle = None
        sub.key = None
        sub.tables = []
        sub.generation += 1
        if handle is not None:
            await self._close_handle(handle)

    async def _close_handle(self, handle: ChannelHandle) -> None:
        try:
            await self.transport.close_channel(handle)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning("Failed to close channel cleanly", channel=handle.name, error=str(e))
