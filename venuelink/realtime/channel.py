"""
ChannelManager - reconnecting WebSocket push channel.

State machine:
    DISCONNECTED --connect()--> CONNECTING
    CONNECTING   --open-------> CONNECTED     (attempt counter reset)
    CONNECTING   --failure----> RECONNECTING  (attempts left) or ERROR
    CONNECTED    --close------> RECONNECTING
    RECONNECTING --timer------> CONNECTING
    any          --disconnect()-> DISCONNECTED (subscriptions kept)

Reaching ERROR stops automatic reconnection; call connect() to start over.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Protocol
from urllib.parse import quote, urlencode

import aiohttp
from loguru import logger

from venuelink.realtime.messages import (
    ConnectionLost,
    InboundType,
    MessageDecodeError,
    OutboundFrame,
    UnknownFrame,
    decode_frame,
    get_notifications,
    get_venue_status,
    order_status_update,
    ping,
    table_status_update,
)
from venuelink.services.casing import KeyCodec
from venuelink.services.credentials import CredentialCoordinator
from venuelink.services.errors import SessionExpiredError
from venuelink.services.timers import DelayedTask, TaskScheduler
from venuelink.settings import Settings, global_settings


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ChannelEndpoint:
    """Which stream to join: a venue's or a user's."""

    scope: Literal["venue", "user"]
    identifier: str

    def url(self, base_url: str, token: str | None = None) -> str:
        url = f"{base_url.rstrip('/')}/ws/{self.scope}/{quote(self.identifier, safe='')}"
        if token:
            url += "?" + urlencode({"token": token})
        return url


class WebSocketLike(Protocol):
    """The part of aiohttp's ClientWebSocketResponse the manager uses."""

    @property
    def closed(self) -> bool: ...

    @property
    def close_code(self) -> int | None: ...

    async def send_str(self, data: str) -> None: ...

    async def receive(self) -> aiohttp.WSMessage: ...

    async def close(self) -> bool: ...

    def exception(self) -> BaseException | None: ...


Connector = Callable[[str], Awaitable[WebSocketLike]]
FrameCallback = Callable[[Any], Any]
StateCallback = Callable[[ConnectionState, ConnectionState], Any]

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)


class AiohttpConnector:
    """Opens sockets on one lazily created aiohttp session."""

    def __init__(self, timeout: float = 30.0):
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def __call__(self, url: str) -> WebSocketLike:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(sock_connect=self._timeout)
            )
        return await self._session.ws_connect(url)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class ChannelManager:
    """
    Usage:
        channel = ChannelManager(ChannelEndpoint("venue", venue_id), coordinator)
        channel.subscribe(InboundType.ORDER_CREATED, on_order_created)
        channel.on_state_change(lambda new, old: print(old, "->", new))

        await channel.connect()
        await channel.update_order_status("o-1", "ready")
        await channel.close()
    """

    def __init__(
        self,
        endpoint: ChannelEndpoint,
        coordinator: CredentialCoordinator | None = None,
        settings: Settings | None = None,
        scheduler: TaskScheduler | None = None,
        connector: Connector | None = None,
        codec: KeyCodec | None = None,
    ):
        settings = settings or global_settings
        self.endpoint = endpoint
        self._coordinator = coordinator
        self._scheduler = scheduler or TaskScheduler(debug=settings.debug)
        self._owns_connector = connector is None
        self._connector: Connector = connector or AiohttpConnector()
        self._codec = codec or KeyCodec(settings.wire_key_case, settings.internal_key_case)
        self._debug = settings.debug

        self._base_url = settings.ws_base_url
        self._max_attempts = settings.ws_reconnect_attempts
        self._base_delay = settings.ws_reconnect_delay
        self._max_delay = settings.ws_reconnect_max_delay
        self._heartbeat_interval = settings.ws_heartbeat_interval

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._generation = 0
        self._ws: WebSocketLike | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_timer: DelayedTask | None = None
        self._heartbeat: DelayedTask | None = None
        self._subscriptions: dict[str, list[FrameCallback]] = {}
        self._state_listeners: list[StateCallback] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    # Lifecycle

    async def connect(self) -> None:
        """
        Open the channel. A no-op while connecting or connected.

        Starts with a fresh reconnect attempt count, so this is also how a caller
        recovers from ERROR.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._cancel_reconnect()
        self._attempts = 0
        await self._open()

    async def _open(self) -> None:
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)

        try:
            url = self.endpoint.url(self._base_url, await self._token())
            ws = await self._connector(url)
        except SessionExpiredError as e:
            logger.error(f"WebSocket connection not authorized: {e}")
            self._set_state(ConnectionState.ERROR)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"WebSocket connection to {self.endpoint.scope} failed: {e}")
            if generation == self._generation:
                self._schedule_reconnect()
            return

        if generation != self._generation:
            # disconnect() was called while the handshake was in progress
            await ws.close()
            return

        self._ws = ws
        self._attempts = 0
        self._set_state(ConnectionState.CONNECTED)
        self._start_heartbeat()
        self._reader = asyncio.ensure_future(self._read_loop(ws, generation))
        logger.info(
            f"WebSocket connected: {self.endpoint.scope}/{self.endpoint.identifier}"
        )

    async def _token(self) -> str | None:
        if self._coordinator is None:
            return None
        credential = await self._coordinator.get_valid_credential()
        return credential.token if credential else None

    async def _read_loop(self, ws: WebSocketLike, generation: int) -> None:
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    await self._handle_text(msg.data.decode("utf-8", errors="replace"))
                elif msg.type in _CLOSED_TYPES:
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"WebSocket error: {ws.exception()}")
                    break
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.warning(f"WebSocket receive failed: {e}")

        if generation == self._generation:
            await self._handle_close(ws, generation)

    async def _handle_close(self, ws: WebSocketLike, generation: int) -> None:
        self._stop_heartbeat()
        self._ws = None
        self._reader = None
        if not ws.closed:
            await ws.close()
        logger.warning(f"WebSocket closed unexpectedly (code={ws.close_code})")

        await self._dispatch(ConnectionLost(payload={"close_code": ws.close_code}))
        # A connection_lost subscriber may have called disconnect()
        if generation == self._generation:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._attempts >= self._max_attempts:
            logger.error(
                f"WebSocket reconnection gave up after {self._attempts} attempts"
            )
            self._set_state(ConnectionState.ERROR)
            return

        delay = min(self._base_delay * (2**self._attempts), self._max_delay)
        self._attempts += 1
        self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            f"WebSocket reconnecting in {delay:.1f}s "
            f"(attempt {self._attempts}/{self._max_attempts})"
        )
        self._reconnect_timer = self._scheduler.schedule(delay, self._reconnect)

    async def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._state == ConnectionState.RECONNECTING:
            await self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    async def disconnect(self) -> None:
        """Close the channel and stop reconnecting. Subscriptions are kept."""
        self._generation += 1
        self._cancel_reconnect()
        self._stop_heartbeat()

        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None and not ws.closed:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        self._attempts = 0
        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        """Disconnect and release the connector's session."""
        await self.disconnect()
        if self._owns_connector and isinstance(self._connector, AiohttpConnector):
            await self._connector.close()

    async def __aenter__(self) -> "ChannelManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Heartbeat

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        if self._heartbeat_interval > 0:
            self._heartbeat = self._scheduler.every(self._heartbeat_interval, self._send_ping)

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _send_ping(self) -> None:
        if self.is_connected:
            await self.send(ping())

    # Inbound

    def subscribe(
        self, message_type: InboundType | str, callback: FrameCallback
    ) -> Callable[[], bool]:
        """
        Register ``callback`` for one frame type. Returns a function that
        unsubscribes it. Registering the same callback twice has no effect.
        """
        key = InboundType(message_type).value
        callbacks = self._subscriptions.setdefault(key, [])
        if callback not in callbacks:
            callbacks.append(callback)
        return lambda: self.unsubscribe(key, callback)

    def unsubscribe(
        self, message_type: InboundType | str, callback: FrameCallback
    ) -> bool:
        callbacks = self._subscriptions.get(InboundType(message_type).value, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def subscriber_count(self, message_type: InboundType | str) -> int:
        return len(self._subscriptions.get(InboundType(message_type).value, []))

    async def _handle_text(self, data: str) -> None:
        try:
            frame = decode_frame(data, self._codec)
        except MessageDecodeError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        if isinstance(frame, UnknownFrame):
            logger.warning(f"Unknown message type: {frame.type}")
            return
        if frame.type == InboundType.PONG.value:
            self._log("PONG")
            return
        await self._dispatch(frame)

    async def _dispatch(self, frame: Any) -> None:
        callbacks = list(self._subscriptions.get(frame.type, []))
        self._log(f"DISPATCH: {frame.type} -> {len(callbacks)} subscribers")
        for callback in callbacks:
            try:
                result = callback(frame)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Subscriber for {frame.type} failed: {e}")

    # Outbound

    async def send(self, frame: OutboundFrame) -> bool:
        """Send a frame. Dropped with a warning unless the channel is connected."""
        ws = self._ws
        if self._state != ConnectionState.CONNECTED or ws is None:
            logger.warning(
                f"WebSocket not connected ({self._state.value}), dropping {frame.type.value}"
            )
            return False
        try:
            await ws.send_str(json.dumps(frame.to_wire(self._codec)))
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.warning(f"Failed to send {frame.type.value}: {e}")
            return False
        self._log(f"SEND: {frame.type.value}")
        return True

    async def update_order_status(self, order_id: str, new_status: str) -> bool:
        return await self.send(order_status_update(order_id, new_status))

    async def update_table_status(self, table_id: str, new_status: str) -> bool:
        return await self.send(table_status_update(table_id, new_status))

    async def request_venue_status(self) -> bool:
        return await self.send(get_venue_status())

    async def request_notifications(self) -> bool:
        return await self.send(get_notifications())

    # State

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register ``callback(new_state, old_state)``; returns a remover."""
        self._state_listeners.append(callback)

        def remove() -> None:
            if callback in self._state_listeners:
                self._state_listeners.remove(callback)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        old, self._state = self._state, state
        self._log(f"STATE: {old.value} -> {state.value}")
        for callback in list(self._state_listeners):
            try:
                callback(state, old)
            except Exception as e:
                logger.exception(f"State listener failed: {e}")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ChannelManager] {message}")
