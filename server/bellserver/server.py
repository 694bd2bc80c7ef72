from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Hashable, Protocol, Sequence
from urllib.parse import urlparse

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from bellserver.class_map import ClassificationIndex, default_index
from bellserver.config import BellConfig
from bellserver.decision import DecisionEngine, RingEvent
from bellserver.protocol import (
    DeviceIdentity,
    Hello,
    ProbabilityBatch,
    ProtocolError,
    UnknownMessageType,
    decode_frame,
    dumps,
    loads,
)
from bellserver.ranking import RankedRecord, rank, top_labels
from bellserver.sessions import HelloResult, SessionRegistry


class DeviceListener(Protocol):
    def on_device_online(self, identity: DeviceIdentity) -> None: ...

    def on_ranked_result(self, identity: DeviceIdentity, ranked: Sequence[RankedRecord]) -> None: ...

    def on_ring(self, event: RingEvent) -> None: ...


DeviceOnlineCallback = Callable[[DeviceIdentity], None]
RankedResultCallback = Callable[[DeviceIdentity, Sequence[RankedRecord]], None]
RingCallback = Callable[[RingEvent], None]


def _identity_json(identity: DeviceIdentity) -> dict[str, str]:
    return {"name": identity.name, "uuid": identity.uuid}


class BellServer:
    """WebSocket endpoint for sound-classification devices.

    Devices connect on any path, send a Hello frame and then probability batches.
    Subscribers on ``/events`` receive device, ring and status notifications as JSON.
    All state lives on the event loop thread, so per-device updates never interleave.
    """

    def __init__(
        self,
        config: BellConfig | None = None,
        *,
        class_index: ClassificationIndex | None = None,
        listeners: Sequence[DeviceListener] = (),
        on_device_online: DeviceOnlineCallback | None = None,
        on_ranked_result: RankedResultCallback | None = None,
        on_ring: RingCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or BellConfig()
        self._logger = logging.getLogger("bellserver")
        if class_index is None:
            if self._config.class_map_path:
                class_index = ClassificationIndex.from_csv(self._config.class_map_path)
            else:
                class_index = default_index()
        self._class_index = class_index
        self._sessions = SessionRegistry(clock=clock)
        self._engine = DecisionEngine(
            effective_sounds=self._config.effective_sounds,
            ring_cooldown_s=self._config.ring_cooldown_s,
            active_window_s=self._config.active_window_s,
            clock=clock,
        )
        self._listeners: list[DeviceListener] = list(listeners)
        self._callbacks: dict[str, Callable[..., None] | None] = {
            "on_device_online": on_device_online,
            "on_ranked_result": on_ranked_result,
            "on_ring": on_ring,
        }
        self._clock = clock

        self._subscribers: set[ServerConnection] = set()
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=256)
        self._server: Server | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._closing: set[asyncio.Task[None]] = set()
        # Connections closed because a newer connection claimed their uuid.
        self._replaced: set[ServerConnection] = set()
        self._stop = asyncio.Event()
        self._bad_frames = 0

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def engine(self) -> DecisionEngine:
        return self._engine

    @property
    def class_index(self) -> ClassificationIndex:
        return self._class_index

    @property
    def port(self) -> int:
        if self._server is None:
            return int(self._config.port)
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return int(self._config.port)

    # Lifecycle

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(
            self._route,
            self._config.host,
            self._config.port,
            max_size=256 * 1024,
        )
        self._tasks = [
            asyncio.create_task(self._broadcast_loop(), name="broadcast_loop"),
            asyncio.create_task(self._status_loop(), name="status_loop"),
        ]
        self._logger.info(
            "WebSocket server started on %s:%s effectiveSounds=%s",
            self._config.host,
            self.port,
            sorted(self._engine.effective_sounds),
        )

    async def close(self) -> None:
        server = self._server
        if server is None:
            return
        self._server = None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        server.close()
        await server.wait_closed()
        self._sessions.clear()
        self._subscribers.clear()
        self._replaced.clear()
        self._logger.info("WebSocket server closed")

    async def run(self) -> None:
        await self.start()
        try:
            await self._stop.wait()
        finally:
            await self.close()

    def request_stop(self) -> None:
        self._stop.set()

    # Routing

    async def _route(self, conn: ServerConnection) -> None:
        path = urlparse(conn.request.path).path if conn.request is not None else "/"
        if path == "/events":
            await self._handle_subscriber(conn)
            return
        await self._handle_device(conn)

    async def _handle_device(self, conn: ServerConnection) -> None:
        self._logger.info("Device connected from %s", conn.remote_address)
        try:
            async for msg in conn:
                if isinstance(msg, str):
                    self._logger.debug("Ignoring text frame from %s", conn.remote_address)
                    continue
                result = self.handle_frame(conn, msg)
                if result is not None and result.evicted is not None:
                    stale = result.evicted.connection
                    self._replaced.add(stale)
                    self._logger.info(
                        "Closing stale connection %s for uuid=%s",
                        getattr(stale, "remote_address", None),
                        result.evicted.identity.uuid,
                    )
                    # Close in the background so this connection keeps reading meanwhile.
                    task = asyncio.create_task(
                        stale.close(code=1008, reason="replaced by newer connection"), name="close_stale_device"
                    )
                    self._closing.add(task)
                    task.add_done_callback(self._closing.discard)
        except ConnectionClosed as e:
            self._logger.info("Device connection from %s closed with error: %s", conn.remote_address, e)
        except OSError:
            self._logger.exception("Transport error on device connection from %s", conn.remote_address)
        finally:
            session = self._sessions.remove(conn)
            if session is not None:
                self._logger.info(
                    "Client disconnected name=%s uuid=%s from %s",
                    session.identity.name,
                    session.identity.uuid,
                    conn.remote_address,
                )
            elif conn in self._replaced:
                self._replaced.discard(conn)
                self._logger.info("Replaced device connection from %s closed", conn.remote_address)
            else:
                self._logger.info("Unidentified device disconnected from %s", conn.remote_address)

    def handle_frame(self, connection: Hashable, frame: bytes) -> HelloResult | None:
        """Decode and dispatch one binary frame from ``connection``.

        Returns the Hello registration result (None for any other frame) so the caller
        can close a connection evicted by a newer one with the same uuid.
        """
        try:
            msg = decode_frame(frame)
        except UnknownMessageType as e:
            self._bad_frames += 1
            self._logger.error("Unknown pack id 0x%02x from %s", e.tag, getattr(connection, "remote_address", None))
            return None
        except ProtocolError as e:
            self._bad_frames += 1
            self._logger.warning("Failed to decode frame from %s: %s", getattr(connection, "remote_address", None), e)
            return None

        if isinstance(msg, Hello):
            return self._on_hello(connection, msg.identity)
        if isinstance(msg, ProbabilityBatch):
            self._on_probabilities(connection, msg)
        return None

    def _on_hello(self, connection: Hashable, identity: DeviceIdentity) -> HelloResult:
        result = self._sessions.on_hello(connection, identity)
        self._logger.info("Hello from name=%s uuid=%s firstSeen=%s", identity.name, identity.uuid, result.first_seen)
        if result.first_seen:
            self._notify("on_device_online", identity)
            self._publish({"type": "device_online", "device": _identity_json(identity)})
        return result

    def _on_probabilities(self, connection: Hashable, batch: ProbabilityBatch) -> None:
        session = self._sessions.lookup(connection)
        if session is None:
            self._logger.debug("Probability batch from unidentified connection %s", getattr(connection, "remote_address", None))
            return
        ranked = rank(batch.records, self._class_index)
        self._notify("on_ranked_result", session.identity, ranked)
        event = self._engine.decide(session.identity, ranked)
        if event is None:
            return
        self._logger.info(
            "Ring name=%s uuid=%s label=%s probability=%.3f top=%s",
            event.identity.name,
            event.identity.uuid,
            event.label,
            event.probability,
            top_labels(ranked),
        )
        self._notify("on_ring", event)
        self._publish(event.to_json())

    def _notify(self, method: str, *args: Any) -> None:
        callbacks = [getattr(listener, method, None) for listener in self._listeners]
        callbacks.append(self._callbacks[method])
        for fn in callbacks:
            if fn is None:
                continue
            try:
                fn(*args)
            except Exception:
                self._logger.exception("Listener %s failed in %s", fn, method)

    # Event subscribers

    async def _handle_subscriber(self, conn: ServerConnection) -> None:
        self._subscribers.add(conn)
        self._logger.info("Subscriber /events connected from %s", conn.remote_address)
        try:
            await conn.send(dumps(self.build_status_payload()))
            async for msg in conn:
                if not isinstance(msg, str):
                    continue
                try:
                    obj = loads(msg)
                except ValueError:
                    continue
                if isinstance(obj, dict) and obj.get("type") == "status.request":
                    await conn.send(dumps(self.build_status_payload()))
        except ConnectionClosed:
            pass
        finally:
            self._subscribers.discard(conn)
            self._logger.info("Subscriber /events disconnected from %s", conn.remote_address)

    def build_status_payload(self) -> dict[str, Any]:
        now = self._clock()
        devices = [
            {
                **_identity_json(s.identity),
                "active": self._engine.is_active(s.identity.uuid),
                "connectedS": round(max(0.0, now - s.connected_at_s), 3),
            }
            for s in self._sessions.sessions()
        ]
        return {"type": "status", "devices": devices, "badFrames": self._bad_frames}

    def _publish(self, obj: dict[str, Any]) -> None:
        if not self._subscribers:
            return
        payload = dumps(obj)
        if self._outbox.full():
            try:
                _ = self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                pass
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            # Subscribers are best-effort; drop.
            pass

    async def _broadcast_loop(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                await self._broadcast(payload)
            except Exception:
                self._logger.exception("Failed to broadcast event")

    async def _status_loop(self) -> None:
        interval = float(self._config.status_interval_s)
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            if self._subscribers:
                await self._broadcast(dumps(self.build_status_payload()))

    async def _broadcast(self, payload: str) -> None:
        dead: list[ServerConnection] = []
        for c in list(self._subscribers):
            try:
                await c.send(payload)
            except ConnectionClosed:
                dead.append(c)
            except Exception as e:
                self._logger.warning("Dropping subscriber %s after send failed: %s", c.remote_address, e)
                dead.append(c)
        for c in dead:
            self._subscribers.discard(c)
