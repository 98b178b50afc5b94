"""
Direct transport — one data channel per conversation.

Both sides derive the same room id from their sorted addresses, so a
channel can be opened from either end without negotiation. Channels
are brokered by a rendezvous service: the local address is registered
as an endpoint id, incoming channels are announced over that
registration, and outgoing channels are dialled on demand.

Records on a channel carry an explicit ``type``:

    message          ciphertext + content hash
    delete-message   content hash of a message the peer wants removed
    file-start       transfer id, chunk count, name, size, MIME type
    file-chunk       transfer id, index, base64 bytes

Inbound results (``InboundEnvelope``, ``DeleteRequest``,
``FileProgress``, ``ReceivedFile``) are pushed onto
``DirectTransport.inbound``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Optional, Protocol
from urllib.parse import quote

import aiohttp
from aiohttp import WSMsgType

from .config import RaabtaConfig
from .crypto import content_hash as hash_ciphertext
from .envelope import DirectRecord, encode_chunk, parse_record
from .errors import ConnectionTimeoutError, TransportError
from .file_transfer import (
    CHUNK_SIZE,
    PACING_EVERY,
    TransferRegistry,
    chunk_count,
    new_transfer_id,
    split_chunks,
)
from .models import (
    DeleteRequest,
    FileProgress,
    Identity,
    InboundEnvelope,
    TransportEvent,
    TransportKind,
    now_ms,
)

logger = logging.getLogger("raabta.direct")

ProgressCallback = Callable[[FileProgress], None]


# ---------------------------------------------------------------------------
# Rendezvous contract
# ---------------------------------------------------------------------------


class DataChannel(Protocol):
    """A reliable, ordered, bidirectional record channel to one peer."""

    peer: str
    room_id: str

    @property
    def is_open(self) -> bool: ...

    async def send(self, record: dict[str, Any]) -> None: ...

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class Rendezvous(Protocol):
    """Signaling service that registers ids and brokers channels."""

    incoming: asyncio.Queue

    async def register(self, peer_id: str) -> bool: ...

    async def dial(self, peer_id: str, room_id: str, metadata: dict[str, Any]) -> DataChannel: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Websocket rendezvous
# ---------------------------------------------------------------------------


class WebSocketChannel:
    """A room socket on the rendezvous service, used as a data channel."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, peer: str, room_id: str) -> None:
        self.ws = ws
        self.peer = peer
        self.room_id = room_id

    @property
    def is_open(self) -> bool:
        return not self.ws.closed

    async def send(self, record: dict[str, Any]) -> None:
        if self.ws.closed:
            raise TransportError(f"Channel {self.room_id} is closed")
        await self.ws.send_json(record)

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        async for msg in self.ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    data = msg.json()
                except ValueError:
                    continue
                if isinstance(data, dict) and "type" in data and data["type"] != "open":
                    yield data
            elif msg.type in (WSMsgType.ERROR, WSMsgType.CLOSE, WSMsgType.CLOSED):
                break

    async def close(self) -> None:
        await self.ws.close()


class WebSocketRendezvous:
    """Rendezvous client over JSON websockets.

    Endpoints on ``signaling_url``:
        /peer?id=<address>                          registration; server sends
                                                    {"type": "open"} or {"type": "id-taken"}
                                                    and later {"type": "connection", ...}
        /room/<room>?peer=<me>[&target=<peer>]      room socket; server sends
                                                    {"type": "open"} once both ends joined
    """

    def __init__(self, signaling_url: str, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.signaling_url = signaling_url.rstrip("/")
        self.incoming: asyncio.Queue = asyncio.Queue()
        self._session = session
        self._owns_session = session is None
        self._peer_id: Optional[str] = None
        self._signal_ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._listener: Optional[asyncio.Task] = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def register(self, peer_id: str) -> bool:
        self._peer_id = peer_id
        session = self._ensure_session()
        url = f"{self.signaling_url}/peer?id={quote(peer_id)}"
        try:
            ws = await session.ws_connect(url, heartbeat=30)
            greeting = await ws.receive_json()
        except (aiohttp.ClientError, ValueError, TypeError) as exc:
            raise TransportError(f"Rendezvous unreachable: {exc}") from exc

        kind = greeting.get("type")
        if kind == "id-taken":
            await ws.close()
            return False
        if kind != "open":
            await ws.close()
            raise TransportError(f"Rendezvous refused registration: {greeting.get('message', kind)}")

        self._signal_ws = ws
        self._listener = asyncio.create_task(self._listen())
        return True

    async def dial(self, peer_id: str, room_id: str, metadata: dict[str, Any]) -> WebSocketChannel:
        ws = await self._open_room(room_id, target=peer_id)
        await ws.send_json({"type": "hello", "metadata": metadata})
        while True:
            msg = await ws.receive()
            if msg.type != WSMsgType.TEXT:
                raise TransportError(f"Room {room_id} closed before opening")
            if msg.json().get("type") == "open":
                return WebSocketChannel(ws, peer_id, room_id)

    async def _open_room(self, room_id: str, target: Optional[str] = None) -> aiohttp.ClientWebSocketResponse:
        session = self._ensure_session()
        url = f"{self.signaling_url}/room/{quote(room_id)}?peer={quote(self._peer_id or '')}"
        if target:
            url += f"&target={quote(target)}"
        try:
            return await session.ws_connect(url, heartbeat=30)
        except aiohttp.ClientError as exc:
            raise TransportError(f"Cannot open room {room_id[:24]}: {exc}") from exc

    async def _listen(self) -> None:
        assert self._signal_ws is not None
        try:
            async for msg in self._signal_ws:
                if msg.type != WSMsgType.TEXT:
                    break
                data = msg.json()
                if data.get("type") != "connection":
                    continue
                peer, room_id = data.get("peer", ""), data.get("room", "")
                try:
                    ws = await self._open_room(room_id)
                except TransportError as exc:
                    logger.warning("Could not accept channel from %s: %s", peer[:16], exc)
                    continue
                self.incoming.put_nowait(WebSocketChannel(ws, peer, room_id))
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning("Rendezvous listener error: %s", exc)

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            self._listener = None
        if self._signal_ws is not None:
            await self._signal_ws.close()
            self._signal_ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


# ---------------------------------------------------------------------------
# DirectTransport
# ---------------------------------------------------------------------------


class DirectTransport:
    """Per-conversation direct channels plus the chunked file protocol.

    Args:
        rendezvous: Signaling service used to register and dial.
        connect_timeout: Bound on opening a channel.
        chunk_size: File chunk size in bytes.
        pacing_every: Pause after this many chunks.
        pacing_delay: Length of each pause in seconds.
    """

    def __init__(
        self,
        rendezvous: Rendezvous,
        connect_timeout: float = 10.0,
        chunk_size: int = CHUNK_SIZE,
        pacing_every: int = PACING_EVERY,
        pacing_delay: float = 0.01,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.chunk_size = chunk_size
        self.pacing_every = max(1, pacing_every)
        self.pacing_delay = pacing_delay
        self.connected = False
        self.send_only = False
        self.peer_id: Optional[str] = None
        self.inbound: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._rendezvous = rendezvous
        self._channels: dict[str, DataChannel] = {}
        self._readers: dict[str, asyncio.Task] = {}
        self._dial_locks: dict[str, asyncio.Lock] = {}
        self._accept_task: Optional[asyncio.Task] = None
        self._transfers = TransferRegistry()

    @classmethod
    def from_config(
        cls, config: RaabtaConfig, rendezvous: Optional[Rendezvous] = None,
    ) -> "DirectTransport":
        if rendezvous is None:
            if not config.signaling_url:
                raise TransportError("No signaling_url configured for direct links")
            rendezvous = WebSocketRendezvous(config.signaling_url)
        return cls(
            rendezvous,
            connect_timeout=config.direct_connect_timeout,
            chunk_size=config.file_chunk_size,
            pacing_every=config.file_pacing_every,
            pacing_delay=config.file_pacing_delay,
        )

    @staticmethod
    def room_id(address_a: str, address_b: str) -> str:
        """Deterministic room name for a pair of addresses."""
        first, second = sorted([address_a, address_b])
        return f"room-{first}-{second}"

    @property
    def open_rooms(self) -> list[str]:
        return [room for room, ch in self._channels.items() if ch.is_open]

    @property
    def pending_transfers(self) -> int:
        return len(self._transfers)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def init(self, identity: Identity) -> str:
        """Register the local address with the rendezvous service.

        An id that is already taken (another local session) leaves the
        transport in send-only mode instead of failing.

        Raises:
            TransportError: If the rendezvous service is unreachable.
        """
        if self.peer_id is not None:
            await self.close()

        self.peer_id = identity.public_key
        if await self._rendezvous.register(self.peer_id):
            self.connected = True
            self.send_only = False
            logger.info("Registered direct endpoint %s", self.peer_id[:16])
        else:
            self.connected = False
            self.send_only = True
            logger.warning("Endpoint id %s already taken — continuing send-only", self.peer_id[:16])

        self._accept_task = asyncio.create_task(self._accept_loop())
        return self.peer_id

    async def close(self) -> None:
        """Drop every channel and in-flight transfer."""
        self.connected = False
        self.send_only = False
        if self._accept_task is not None:
            self._accept_task.cancel()
            self._accept_task = None
        for task in self._readers.values():
            task.cancel()
        self._readers.clear()
        self._transfers.clear()
        channels = list(self._channels.values())
        self._channels.clear()

        for channel in channels:
            try:
                await channel.close()
            except Exception as exc:
                logger.debug("Error closing channel %s: %s", channel.room_id, exc)
        await self._rendezvous.close()
        self.peer_id = None
        logger.info("Direct transport closed")

    # -------------------------------------------------------------------
    # Channels
    # -------------------------------------------------------------------

    async def connect(self, peer: str) -> DataChannel:
        """Open (or reuse) the channel for the room shared with ``peer``.

        Raises:
            TransportError: If the transport was never initialised.
            ConnectionTimeoutError: If the channel does not open in time.
        """
        if self.peer_id is None:
            raise TransportError("Direct transport not initialised")

        room = self.room_id(self.peer_id, peer)
        lock = self._dial_locks.setdefault(room, asyncio.Lock())
        async with lock:
            channel = self._channels.get(room)
            if channel is not None and channel.is_open:
                return channel

            logger.debug("Dialling %s for %s", peer[:16], room[:24])
            try:
                channel = await asyncio.wait_for(
                    self._rendezvous.dial(peer, room, {"from": self.peer_id, "roomId": room}),
                    self.connect_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise ConnectionTimeoutError(
                    f"Connection to {peer[:16]} timed out after {self.connect_timeout}s"
                ) from exc
            await self._attach(channel, room)
            return channel

    async def _attach(self, channel: DataChannel, room: Optional[str] = None) -> None:
        room = room or channel.room_id or self.room_id(self.peer_id or "", channel.peer)
        previous = self._readers.pop(room, None)
        previous_channel = self._channels.get(room)
        if previous is not None:
            previous.cancel()
            self._transfers.drop_room(room)
        self._channels[room] = channel
        self._readers[room] = asyncio.create_task(self._read_loop(room, channel))
        logger.info("Channel open for %s", room[:24])
        if previous_channel is not None and previous_channel is not channel:
            try:
                await previous_channel.close()
            except Exception as exc:
                logger.debug("Error closing replaced channel for %s: %s", room[:24], exc)

    async def _accept_loop(self) -> None:
        try:
            while True:
                channel = await self._rendezvous.incoming.get()
                logger.info("Incoming channel from %s", channel.peer[:16])
                await self._attach(channel)
        except asyncio.CancelledError:
            pass

    async def _read_loop(self, room: str, channel: DataChannel) -> None:
        try:
            async for raw in channel:
                self._dispatch(room, channel, raw)
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.warning("Channel %s read error: %s", room[:24], exc)
        finally:
            self._on_channel_closed(room, channel)

    def _on_channel_closed(self, room: str, channel: DataChannel) -> None:
        if self._channels.get(room) is not channel:
            return
        del self._channels[room]
        self._readers.pop(room, None)
        self._transfers.drop_room(room)
        logger.info("Channel closed for %s", room[:24])

    # -------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------

    async def send_message(
        self,
        peer: str,
        ciphertext: str,
        content_hash: Optional[str] = None,
    ) -> str:
        """Send a ciphertext to ``peer``. Returns the record's message id."""
        channel = await self.connect(peer)
        record = DirectRecord(
            type="message",
            from_pub_key=self.peer_id or "",
            encrypted_text=ciphertext,
            message_id=str(uuid.uuid4()),
            content_hash=content_hash or hash_ciphertext(ciphertext),
            timestamp=now_ms(),
        )
        await channel.send(record.to_wire())
        logger.debug("Sent message %s to %s", record.message_id, peer[:16])
        return record.message_id or ""

    async def send_delete(self, peer: str, content_hash: str) -> None:
        """Ask ``peer`` to remove the message with ``content_hash``."""
        channel = await self.connect(peer)
        record = DirectRecord(
            type="delete-message",
            from_pub_key=self.peer_id or "",
            content_hash=content_hash,
            timestamp=now_ms(),
        )
        await channel.send(record.to_wire())

    async def send_file(
        self,
        peer: str,
        data: bytes,
        filename: str,
        mime_type: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None,
        transfer_id: Optional[str] = None,
    ) -> str:
        """Stream a file to ``peer`` as file-start + file-chunk records.

        Returns:
            str: The transfer id.
        """
        channel = await self.connect(peer)
        transfer_id = transfer_id or new_transfer_id()
        total = chunk_count(len(data), self.chunk_size)
        sender = self.peer_id or ""

        await channel.send(DirectRecord(
            type="file-start",
            from_pub_key=sender,
            transfer_id=transfer_id,
            total_chunks=total,
            filename=filename,
            size=len(data),
            mime_type=mime_type,
        ).to_wire())
        logger.info("Sending transfer %s: %s (%d chunks, %d bytes) -> %s",
                    transfer_id, filename, total, len(data), peer[:16])

        for index, chunk in split_chunks(data, self.chunk_size):
            await channel.send(DirectRecord(
                type="file-chunk",
                from_pub_key=sender,
                transfer_id=transfer_id,
                index=index,
                data=encode_chunk(chunk),
            ).to_wire())
            if on_progress is not None:
                on_progress(FileProgress(
                    transfer_id=transfer_id,
                    peer=peer,
                    direction="send",
                    progress=(index + 1) / total,
                    filename=filename,
                ))
            if (index + 1) % self.pacing_every == 0:
                await asyncio.sleep(self.pacing_delay)

        return transfer_id

    # -------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------

    def _dispatch(self, room: str, channel: DataChannel, raw: Any) -> None:
        record = parse_record(raw)
        if record is None:
            return
        sender = channel.peer or record.from_pub_key

        if record.type == "message":
            if not record.encrypted_text:
                return
            digest = record.content_hash or hash_ciphertext(record.encrypted_text)
            self.inbound.put_nowait(InboundEnvelope(
                transport=TransportKind.DIRECT,
                envelope_id=record.message_id or digest,
                sender=sender,
                recipient=self.peer_id,
                ciphertext=record.encrypted_text,
                timestamp=record.timestamp or now_ms(),
                content_hash=digest,
                source=room,
            ))

        elif record.type == "delete-message":
            if record.content_hash:
                self.inbound.put_nowait(DeleteRequest(sender=sender, content_hash=record.content_hash))

        elif record.type == "file-start":
            if not record.transfer_id:
                return
            self._transfers.start(
                record.transfer_id,
                total_chunks=record.total_chunks or 1,
                filename=record.filename or "file",
                size=record.size or 0,
                mime_type=record.mime_type or "application/octet-stream",
                sender=sender,
                room_id=room,
            )

        elif record.type == "file-chunk":
            self._apply_chunk(record)

    def _apply_chunk(self, record: DirectRecord) -> None:
        if not record.transfer_id or record.index is None:
            return
        try:
            data = record.chunk_bytes
            transfer, received = self._transfers.add_chunk(record.transfer_id, record.index, data)
        except ValueError as exc:
            logger.warning("Dropping chunk for %s: %s", record.transfer_id, exc)
            return
        if transfer is None:
            return

        self.inbound.put_nowait(FileProgress(
            transfer_id=transfer.transfer_id,
            peer=transfer.sender,
            direction="receive",
            progress=transfer.progress,
            filename=transfer.filename,
        ))
        if received is not None:
            self.inbound.put_nowait(received)
