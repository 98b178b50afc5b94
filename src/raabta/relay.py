"""
Relay transport — best-effort broadcast through independent relays.

Each configured endpoint gets its own websocket speaking NIP-01
(``EVENT`` / ``REQ`` / ``CLOSE`` out; ``EVENT`` / ``EOSE`` / ``OK`` /
``NOTICE`` / ``CLOSED`` in). Endpoints share nothing, so every
outcome is per endpoint: a publish succeeds when at least one relay
accepts it, and a subscription is considered live once a quorum has
caught up or the wait bound expires.

Inbound events are verified and pushed onto ``RelayTransport.inbound``
in arrival order per endpoint. The same event arriving from several
relays is expected; deduplication happens downstream.

Usage:
    relay = RelayTransport(config.relays)
    await relay.connect(identity)
    result = await relay.publish(identity, recipient_x_only, ciphertext)
    envelope = await relay.inbound.get()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from aiohttp import WSMsgType

from .bridge import to_transport_address
from .config import RaabtaConfig
from .crypto import content_hash
from .envelope import RAABTA_MESSAGE_KIND, parse_event, sign_event, verify_event
from .errors import PublishError, TransportError
from .models import Identity, InboundEnvelope, PublishResult, RelayEvent, TransportKind

logger = logging.getLogger("raabta.relay")

DAY_SECONDS = 86400

Connector = Callable[[str], Awaitable[Any]]
EnvelopeHandler = Callable[[InboundEnvelope], None]


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class _Subscription:
    """One REQ fanned out to every endpoint."""

    def __init__(
        self,
        filters: list[dict[str, Any]],
        on_event: Callable[[str, Any], None],
        sub_id: Optional[str] = None,
    ) -> None:
        self.id = sub_id or uuid.uuid4().hex[:16]
        self.filters = filters
        self.on_event = on_event
        self.caught_up: set[str] = set()
        self._changed = asyncio.Event()

    def mark_caught_up(self, url: str) -> None:
        self.caught_up.add(url)
        self._changed.set()

    async def wait_for(self, count: int) -> None:
        """Block until ``count`` endpoints have sent EOSE."""
        while len(self.caught_up) < count:
            self._changed.clear()
            await self._changed.wait()


# ---------------------------------------------------------------------------
# Per-endpoint connection
# ---------------------------------------------------------------------------


class RelayConnection:
    """A single relay websocket and the state tied to it.

    Args:
        url: Relay endpoint URL.
        ws: Open websocket (aiohttp ``ClientWebSocketResponse`` or compatible).
        on_close: Called with the URL once the read loop ends.
    """

    def __init__(
        self,
        url: str,
        ws: Any,
        on_close: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.url = url
        self.ws = ws
        self.closed = False
        self._on_close = on_close
        self._subscriptions: dict[str, _Subscription] = {}
        self._ok_waiters: dict[str, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def send(self, frame: list[Any]) -> None:
        if self.closed:
            raise TransportError(f"Relay {self.url} is closed")
        await self.ws.send_str(json.dumps(frame))

    async def request(self, sub: _Subscription) -> None:
        self._subscriptions[sub.id] = sub
        await self.send(["REQ", sub.id, *sub.filters])

    async def unsubscribe(self, sub_id: str) -> None:
        if self._subscriptions.pop(sub_id, None) is not None and not self.closed:
            await self.send(["CLOSE", sub_id])

    async def publish(self, event: RelayEvent, timeout: float) -> tuple[bool, str]:
        """Send an event and wait for the relay's OK verdict."""
        waiter = asyncio.get_running_loop().create_future()
        self._ok_waiters[event.id] = waiter
        try:
            await self.send(["EVENT", event.model_dump()])
            return await asyncio.wait_for(waiter, timeout)
        finally:
            self._ok_waiters.pop(event.id, None)

    async def _read_loop(self) -> None:
        try:
            async for msg in self.ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(frame, list) and frame:
                        self._dispatch(frame)
                elif msg.type in (WSMsgType.ERROR, WSMsgType.CLOSE, WSMsgType.CLOSED):
                    break
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning("Read loop error for relay %s: %s", self.url, exc)
        finally:
            self._mark_closed()

    def _dispatch(self, frame: list[Any]) -> None:
        verb = frame[0]
        if verb == "EVENT" and len(frame) >= 3:
            sub = self._subscriptions.get(frame[1])
            if sub is not None:
                sub.on_event(self.url, frame[2])
        elif verb == "EOSE" and len(frame) >= 2:
            sub = self._subscriptions.get(frame[1])
            if sub is not None:
                sub.mark_caught_up(self.url)
        elif verb == "OK" and len(frame) >= 3:
            waiter = self._ok_waiters.get(frame[1])
            if waiter is not None and not waiter.done():
                message = frame[3] if len(frame) >= 4 else ""
                waiter.set_result((bool(frame[2]), str(message)))
        elif verb == "CLOSED" and len(frame) >= 2:
            logger.info("Relay %s closed subscription %s: %s",
                        self.url, frame[1], frame[2] if len(frame) > 2 else "")
            sub = self._subscriptions.pop(frame[1], None)
            if sub is not None:
                sub.mark_caught_up(self.url)
        elif verb == "NOTICE":
            logger.info("Relay %s notice: %s", self.url, frame[1] if len(frame) > 1 else "")

    def _mark_closed(self) -> None:
        if self.closed:
            return
        self.closed = True
        for waiter in self._ok_waiters.values():
            if not waiter.done():
                waiter.set_exception(TransportError(f"Relay {self.url} disconnected"))
        # Let pending subscription waits move on without this endpoint.
        for sub in self._subscriptions.values():
            sub._changed.set()
        if self._on_close is not None:
            self._on_close(self.url)

    async def close(self) -> None:
        self._mark_closed()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        try:
            await self.ws.close()
        except Exception as exc:
            logger.debug("Error closing relay %s: %s", self.url, exc)


# ---------------------------------------------------------------------------
# RelayTransport
# ---------------------------------------------------------------------------


class RelayTransport:
    """Pool of independent relay connections.

    Args:
        relays: Relay endpoint URLs.
        connector: Coroutine opening a websocket for a URL. Defaults to aiohttp.
        connect_timeout: Bound on opening an endpoint and on the quorum wait.
        publish_timeout: Bound on waiting for each endpoint's OK.
        subscription_window_days: How far back the standing subscription reaches.
        history_window_days: Default reach of ``fetch_history``.
        kind: Event kind carrying chat ciphertext.
    """

    def __init__(
        self,
        relays: list[str],
        connector: Optional[Connector] = None,
        connect_timeout: float = 5.0,
        publish_timeout: float = 10.0,
        subscription_window_days: int = 7,
        history_window_days: int = 365,
        kind: int = RAABTA_MESSAGE_KIND,
    ) -> None:
        self.relays = list(dict.fromkeys(relays))
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout
        self.subscription_window_days = subscription_window_days
        self.history_window_days = history_window_days
        self.kind = kind
        self.connected = False
        self.inbound: asyncio.Queue[InboundEnvelope] = asyncio.Queue()
        self._connector = connector or self._aiohttp_connect
        self._session: Optional[aiohttp.ClientSession] = None
        self._connections: dict[str, RelayConnection] = {}
        self._connect_locks: dict[str, asyncio.Lock] = {}
        self._subscriptions: dict[str, _Subscription] = {}

    @classmethod
    def from_config(cls, config: RaabtaConfig, connector: Optional[Connector] = None) -> "RelayTransport":
        return cls(
            config.relays,
            connector=connector,
            connect_timeout=config.relay_connect_timeout,
            publish_timeout=config.relay_publish_timeout,
            subscription_window_days=config.subscription_window_days,
            history_window_days=config.history_window_days,
        )

    @property
    def open_endpoints(self) -> list[str]:
        return [url for url, conn in self._connections.items() if not conn.closed]

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def connect(self, identity: Identity) -> bool:
        """Open all endpoints and start the standing subscription.

        Waits for ``min(2, open endpoints)`` endpoints to catch up, but
        never longer than ``connect_timeout``; after that the subscription
        is treated as live anyway.

        Returns:
            bool: False when no endpoint could be reached.
        """
        await self._open_all()
        open_count = len(self.open_endpoints)
        if open_count == 0:
            logger.warning("No relay reachable out of %d configured", len(self.relays))
            self.connected = False
            return False

        sub = await self.subscribe(identity)
        quorum = min(2, open_count)
        try:
            await asyncio.wait_for(sub.wait_for(quorum), self.connect_timeout)
            logger.info("Subscription caught up on %d/%d relays", len(sub.caught_up), open_count)
        except asyncio.TimeoutError:
            logger.info(
                "Quorum wait expired (%d/%d caught up) — treating subscription as live",
                len(sub.caught_up), quorum,
            )
        self.connected = True
        return True

    async def close(self) -> None:
        """Drop every subscription and socket."""
        connections = list(self._connections.values())
        self._connections.clear()
        self._subscriptions.clear()
        self.connected = False
        for conn in connections:
            await conn.close()
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Relay transport closed")

    def add_relay(self, url: str) -> bool:
        """Add an endpoint. It is dialled on the next connect or publish."""
        if url in self.relays:
            return False
        self.relays.append(url)
        return True

    async def remove_relay(self, url: str) -> bool:
        """Remove an endpoint and close its socket."""
        if url not in self.relays:
            return False
        self.relays = [r for r in self.relays if r != url]
        conn = self._connections.pop(url, None)
        if conn is not None:
            await conn.close()
        return True

    # -------------------------------------------------------------------
    # Subscribe / publish / history
    # -------------------------------------------------------------------

    async def subscribe(
        self,
        identity: Identity,
        on_envelope: Optional[EnvelopeHandler] = None,
    ) -> _Subscription:
        """Open the standing filter for envelopes tagged with our address.

        Args:
            identity: Local identity.
            on_envelope: Called once per verified event per endpoint.
                Defaults to pushing onto ``self.inbound``.
        """
        own = to_transport_address(identity.public_key)
        since = int(time.time()) - DAY_SECONDS * self.subscription_window_days
        filters = [{"kinds": [self.kind], "#p": [own], "since": since}]
        deliver = on_envelope or self.inbound.put_nowait

        def on_event(url: str, raw: Any) -> None:
            envelope = self._to_envelope(raw, url, expect_recipient=own)
            if envelope is not None:
                deliver(envelope)

        sub = _Subscription(filters, on_event)
        self._subscriptions[sub.id] = sub
        for conn in list(self._connections.values()):
            if conn.closed:
                continue
            try:
                await conn.request(sub)
            except Exception as exc:
                logger.warning("Subscribe failed on %s: %s", conn.url, exc)
        logger.info("Subscribed for %s on %d relays", own[:16], len(self.open_endpoints))
        return sub

    async def publish(
        self,
        identity: Identity,
        recipient: str,
        ciphertext: str,
    ) -> PublishResult:
        """Sign an envelope for ``recipient`` and broadcast it to every endpoint.

        Args:
            identity: Sender identity.
            recipient: Recipient's transport (x-only) address.
            ciphertext: Opaque payload.

        Returns:
            PublishResult with per-endpoint outcome.

        Raises:
            PublishError: If no endpoint accepted the envelope.
        """
        event = sign_event(identity.private_key, recipient, ciphertext, kind=self.kind)
        result = PublishResult(event_id=event.id, attempted=len(self.relays))

        outcomes = await asyncio.gather(
            *(self._publish_one(url, event) for url in self.relays),
            return_exceptions=True,
        )
        for url, outcome in zip(self.relays, outcomes):
            if isinstance(outcome, asyncio.TimeoutError):
                result.errors[url] = "timeout"
            elif isinstance(outcome, BaseException):
                result.errors[url] = str(outcome) or type(outcome).__name__
            elif outcome[0]:
                result.accepted += 1
                result.accepted_by.append(url)
            else:
                result.errors[url] = f"rejected: {outcome[1]}"

        logger.info("Envelope %s published to %d/%d relays",
                    event.id[:12], result.accepted, result.attempted)
        if not result.ok:
            raise PublishError(
                f"No relay accepted envelope {event.id[:12]}", errors=result.errors,
            )
        return result

    async def fetch_history(
        self,
        identity: Identity,
        contact: str,
        since: Optional[int] = None,
    ) -> list[InboundEnvelope]:
        """One-shot query for everything exchanged with ``contact``.

        Args:
            identity: Local identity.
            contact: Contact's transport (x-only) address.
            since: Lower bound in epoch milliseconds. Defaults to the
                history window.

        Returns:
            Envelopes in both directions, merged by id, oldest first.
        """
        own = to_transport_address(identity.public_key)
        since_s = (
            since // 1000 if since is not None
            else int(time.time()) - DAY_SECONDS * self.history_window_days
        )
        filters = [
            {"kinds": [self.kind], "authors": [contact], "#p": [own], "since": since_s},
            {"kinds": [self.kind], "authors": [own], "#p": [contact], "since": since_s},
        ]

        await self._open_all()
        collected: dict[str, InboundEnvelope] = {}

        def on_event(url: str, raw: Any) -> None:
            envelope = self._to_envelope(raw, url)
            if envelope is not None and envelope.envelope_id not in collected:
                collected[envelope.envelope_id] = envelope

        sub = _Subscription(filters, on_event)
        targets = [c for c in self._connections.values() if not c.closed]
        for conn in targets:
            try:
                await conn.request(sub)
            except Exception as exc:
                logger.warning("History query failed on %s: %s", conn.url, exc)
        try:
            await asyncio.wait_for(sub.wait_for(len(targets)), self.connect_timeout)
        except asyncio.TimeoutError:
            logger.info("History query timed out on %d relay(s)",
                        len(targets) - len(sub.caught_up))
        for conn in targets:
            try:
                await conn.unsubscribe(sub.id)
            except Exception as exc:
                logger.debug("CLOSE failed on %s: %s", conn.url, exc)

        return sorted(collected.values(), key=lambda e: (e.timestamp, e.envelope_id))

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _to_envelope(
        self, raw: Any, url: str, expect_recipient: Optional[str] = None,
    ) -> Optional[InboundEnvelope]:
        event = parse_event(raw)
        if event is None or event.kind != self.kind:
            return None
        if not verify_event(event):
            logger.warning("Dropping event %s from %s: bad signature", event.id[:12], url)
            return None
        recipients = event.recipients
        if expect_recipient is not None and expect_recipient not in recipients:
            return None
        return InboundEnvelope(
            transport=TransportKind.RELAY,
            envelope_id=event.id,
            sender=event.pubkey,
            recipient=recipients[0] if recipients else None,
            ciphertext=event.content,
            timestamp=event.created_at * 1000,
            content_hash=content_hash(event.content),
            source=url,
        )

    async def _open_all(self) -> None:
        outcomes = await asyncio.gather(
            *(self._ensure_connection(url) for url in self.relays),
            return_exceptions=True,
        )
        for url, outcome in zip(self.relays, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Relay %s unreachable: %s", url, outcome or type(outcome).__name__)

    async def _publish_one(self, url: str, event: RelayEvent) -> tuple[bool, str]:
        conn = await self._ensure_connection(url)
        return await conn.publish(event, self.publish_timeout)

    async def _ensure_connection(self, url: str) -> RelayConnection:
        lock = self._connect_locks.setdefault(url, asyncio.Lock())
        async with lock:
            conn = self._connections.get(url)
            if conn is not None and not conn.closed:
                return conn

            ws = await asyncio.wait_for(self._connector(url), self.connect_timeout)
            conn = RelayConnection(url, ws, on_close=self._on_connection_closed)
            conn.start()
            self._connections[url] = conn
            logger.debug("Connected to relay %s", url)

            for sub in list(self._subscriptions.values()):
                await conn.request(sub)
            return conn

    def _on_connection_closed(self, url: str) -> None:
        conn = self._connections.get(url)
        if conn is not None and conn.closed:
            del self._connections[url]
        logger.info("Relay %s disconnected", url)
        if self.connected and not self.open_endpoints:
            logger.warning("All relays disconnected")
            self.connected = False

    async def _aiohttp_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, heartbeat=30)
