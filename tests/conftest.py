"""Shared test fixtures for raabta.

Provides in-memory stand-ins for the two networks the engine talks to:

    FakeRelayHub / FakeRelay   NIP-01 relays reached through a connector
    MemorySignaling            a rendezvous service handing out paired channels
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import aiohttp
import pytest
from aiohttp import WSMessage, WSMsgType

from raabta.config import RaabtaConfig
from raabta.crypto import generate_key_pair, username_for
from raabta.direct import DirectTransport
from raabta.errors import TransportError
from raabta.models import Identity
from raabta.relay import RelayTransport
from raabta.sync.engine import MessageSynchronizer
from raabta.sync.store import MessageStore


def make_identity(parity: Optional[str] = None) -> Identity:
    """Generate an identity, optionally with a given ``02``/``03`` prefix."""
    while True:
        keys = generate_key_pair()
        if parity is None or keys.public_key.startswith(parity):
            return Identity(
                private_key=keys.private_key,
                public_key=keys.public_key,
                username=username_for(keys.public_key),
            )


# ---------------------------------------------------------------------------
# Fake relays
# ---------------------------------------------------------------------------


class FakeRelaySocket:
    """Client end of a websocket to a FakeRelay."""

    def __init__(self, relay: "FakeRelay") -> None:
        self.relay = relay
        self.subs: dict[str, list[dict[str, Any]]] = {}
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    def push(self, frame: list[Any]) -> None:
        if not self.closed:
            self._frames.put_nowait(WSMessage(WSMsgType.TEXT, json.dumps(frame), None))

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.relay.handle(self, json.loads(data))

    def __aiter__(self) -> "FakeRelaySocket":
        return self

    async def __anext__(self) -> WSMessage:
        msg = await self._frames.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def close(self) -> None:
        self.drop()

    def drop(self) -> None:
        if not self.closed:
            self.closed = True
            self._frames.put_nowait(None)


def _matches(event: dict[str, Any], flt: dict[str, Any]) -> bool:
    if "kinds" in flt and event["kind"] not in flt["kinds"]:
        return False
    if "authors" in flt and event["pubkey"] not in flt["authors"]:
        return False
    if "since" in flt and event["created_at"] < flt["since"]:
        return False
    if "#p" in flt:
        tagged = {t[1] for t in event["tags"] if len(t) >= 2 and t[0] == "p"}
        if not tagged & set(flt["#p"]):
            return False
    return True


class FakeRelay:
    """One in-memory relay.

    Modes:
        accept   store and broadcast events, reply OK true
        reject   reply OK false
        silent   never reply to EVENT (publish times out)
    """

    def __init__(self, url: str, mode: str = "accept", eose: bool = True) -> None:
        self.url = url
        self.mode = mode
        self.eose = eose
        self.events: list[dict[str, Any]] = []
        self.received: list[list[Any]] = []
        self.sockets: list[FakeRelaySocket] = []

    def open_socket(self) -> FakeRelaySocket:
        socket = FakeRelaySocket(self)
        self.sockets.append(socket)
        return socket

    def handle(self, socket: FakeRelaySocket, frame: list[Any]) -> None:
        self.received.append(frame)
        verb = frame[0]
        if verb == "EVENT":
            event = frame[1]
            if self.mode == "accept":
                self.store(event)
                socket.push(["OK", event["id"], True, ""])
            elif self.mode == "reject":
                socket.push(["OK", event["id"], False, "blocked: test relay"])
        elif verb == "REQ":
            sub_id, filters = frame[1], frame[2:]
            socket.subs[sub_id] = filters
            for event in self.events:
                if any(_matches(event, f) for f in filters):
                    socket.push(["EVENT", sub_id, event])
            if self.eose:
                socket.push(["EOSE", sub_id])
        elif verb == "CLOSE":
            socket.subs.pop(frame[1], None)

    def store(self, event: dict[str, Any]) -> None:
        """Accept an event and deliver it to live subscriptions."""
        if any(e["id"] == event["id"] for e in self.events):
            return
        self.events.append(event)
        for socket in self.sockets:
            for sub_id, filters in socket.subs.items():
                if any(_matches(event, f) for f in filters):
                    socket.push(["EVENT", sub_id, event])

    def drop_all(self) -> None:
        for socket in self.sockets:
            socket.drop()


class FakeRelayHub:
    """A set of fake relays reachable through :meth:`connect`."""

    def __init__(self) -> None:
        self.relays: dict[str, FakeRelay] = {}
        self.down: set[str] = set()

    def add(self, url: str, mode: str = "accept", eose: bool = True) -> FakeRelay:
        relay = FakeRelay(url, mode=mode, eose=eose)
        self.relays[url] = relay
        return relay

    @property
    def urls(self) -> list[str]:
        return list(self.relays)

    async def connect(self, url: str) -> FakeRelaySocket:
        relay = self.relays.get(url)
        if relay is None or url in self.down:
            raise aiohttp.ClientConnectionError(f"cannot reach {url}")
        return relay.open_socket()


# ---------------------------------------------------------------------------
# In-memory rendezvous
# ---------------------------------------------------------------------------


class MemoryChannel:
    """One end of an in-memory data channel pair."""

    def __init__(self, peer: str, room_id: str) -> None:
        self.peer = peer
        self.room_id = room_id
        self.other: Optional["MemoryChannel"] = None
        self.sent: list[dict[str, Any]] = []
        self._open = True
        self._inbox: asyncio.Queue = asyncio.Queue()

    @classmethod
    def pair(cls, dialer: str, target: str, room_id: str) -> tuple["MemoryChannel", "MemoryChannel"]:
        local, remote = cls(target, room_id), cls(dialer, room_id)
        local.other, remote.other = remote, local
        return local, remote

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, record: dict[str, Any]) -> None:
        if not self._open:
            raise TransportError(f"Channel {self.room_id} is closed")
        self.sent.append(record)
        assert self.other is not None
        self.other._inbox.put_nowait(json.loads(json.dumps(record)))

    def inject(self, record: Any) -> None:
        """Deliver a raw record to this end as if the peer sent it."""
        self._inbox.put_nowait(record)

    async def __aiter__(self):
        while True:
            record = await self._inbox.get()
            if record is None:
                return
            yield record

    def _shut(self) -> None:
        if self._open:
            self._open = False
            self._inbox.put_nowait(None)

    async def close(self) -> None:
        self._shut()
        if self.other is not None:
            self.other._shut()


class MemoryRendezvous:
    """Rendezvous endpoint attached to a MemorySignaling hub."""

    def __init__(self, hub: "MemorySignaling") -> None:
        self.hub = hub
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.peer_id: Optional[str] = None
        self.closed = False

    async def register(self, peer_id: str) -> bool:
        if self.hub.offline:
            raise TransportError("Rendezvous unreachable: offline")
        owner = self.hub.peers.get(peer_id)
        if owner is not None and owner is not self:
            return False
        self.hub.peers[peer_id] = self
        self.peer_id = peer_id
        self.closed = False
        return True

    async def dial(self, peer_id: str, room_id: str, metadata: dict[str, Any]) -> MemoryChannel:
        target = self.hub.peers.get(peer_id)
        if target is None:
            # Unreachable peers never answer; the caller's timeout applies.
            await asyncio.sleep(3600)
        local, remote = MemoryChannel.pair(metadata["from"], peer_id, room_id)
        self.hub.channels.append(local)
        target.incoming.put_nowait(remote)
        return local

    async def close(self) -> None:
        self.closed = True
        if self.peer_id is not None and self.hub.peers.get(self.peer_id) is self:
            del self.hub.peers[self.peer_id]


class MemorySignaling:
    """Hub connecting MemoryRendezvous endpoints."""

    def __init__(self) -> None:
        self.peers: dict[str, MemoryRendezvous] = {}
        self.channels: list[MemoryChannel] = []
        self.offline = False

    def endpoint(self) -> MemoryRendezvous:
        return MemoryRendezvous(self)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is truthy or fail after ``timeout``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary raabta home directory."""
    raabta_home = tmp_path / ".raabta"
    raabta_home.mkdir()
    return raabta_home


@pytest.fixture
def alice() -> Identity:
    return make_identity()


@pytest.fixture
def bob() -> Identity:
    return make_identity()


@pytest.fixture
def relay_hub() -> FakeRelayHub:
    hub = FakeRelayHub()
    hub.add("wss://relay-one.test")
    hub.add("wss://relay-two.test")
    return hub


@pytest.fixture
def signaling() -> MemorySignaling:
    return MemorySignaling()


@pytest.fixture
def fast_config() -> RaabtaConfig:
    """Configuration with timeouts short enough for tests."""
    return RaabtaConfig(
        relay_connect_timeout=0.5,
        relay_publish_timeout=0.3,
        direct_connect_timeout=0.3,
        file_pacing_delay=0.0,
    )


def build_relay(hub: FakeRelayHub, config: RaabtaConfig) -> RelayTransport:
    return RelayTransport(
        hub.urls,
        connector=hub.connect,
        connect_timeout=config.relay_connect_timeout,
        publish_timeout=config.relay_publish_timeout,
    )


def build_direct(signaling: MemorySignaling, config: RaabtaConfig) -> DirectTransport:
    return DirectTransport(
        signaling.endpoint(),
        connect_timeout=config.direct_connect_timeout,
        pacing_delay=config.file_pacing_delay,
    )


def build_sync(
    identity: Identity,
    root: Path,
    config: RaabtaConfig,
    hub: Optional[FakeRelayHub] = None,
    signaling: Optional[MemorySignaling] = None,
    filedrop: Any = None,
) -> MessageSynchronizer:
    """A synchronizer with an on-disk store under ``root`` and fake transports."""
    root.mkdir(parents=True, exist_ok=True)
    return MessageSynchronizer(
        identity,
        MessageStore(root / "raabta.db"),
        config=config,
        relay=build_relay(hub, config) if hub is not None else None,
        direct=build_direct(signaling, config) if signaling is not None else None,
        filedrop=filedrop,
        home=root,
    )
