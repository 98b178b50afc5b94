"""
Message store synchronizer -- the only writer of conversations.

Owns the local store, the deduplicator and the lifecycle of both
transports. Outbound messages are encrypted once, handed to every
available transport concurrently, and persisted whatever the
transports did. Inbound events from every transport funnel through
one queue and are applied in arrival order by a single writer task.

    send:     compose -> encrypt -> {relay publish, direct send} -> persist
    receive:  transport queue -> dedup -> decrypt candidates -> contact
              -> persist -> conversation -> callbacks

Usage:
    sync = MessageSynchronizer.from_home(home)
    sync.on_incoming_message(print)
    await sync.connect()
    await sync.send_text(address, "hello")
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import re
from pathlib import Path
from typing import Any, Callable, Optional

from ..bridge import to_native_addresses, to_transport_address
from ..config import RaabtaConfig, load_config, resolve_home
from ..crypto import content_hash, decrypt, derive_shared_secret, encrypt
from ..direct import DirectTransport, Rendezvous
from ..errors import DecryptError, RaabtaError, StoreError, TransportError
from ..filedrop import FileDropClient, decrypt_file, encrypt_file
from ..identity import require_identity
from ..models import (
    Contact,
    DeleteRequest,
    FileAttachment,
    FileProgress,
    Identity,
    InboundEnvelope,
    Message,
    ReceivedFile,
    TransportEvent,
    TransportKind,
    now_ms,
)
from ..relay import Connector, RelayTransport
from .dedup import Deduplicator
from .payload import decode_payload, encode_file_payload, encode_text
from .store import MessageStore

logger = logging.getLogger("raabta.sync.engine")

DAY_MS = 24 * 60 * 60 * 1000

MessageCallback = Callable[[Message], None]
ProgressCallback = Callable[[FileProgress], None]

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class MessageSynchronizer:
    """Apply sends and receives to the local store, in order, exactly once.

    Args:
        identity: Local identity.
        store: Durable message store.
        config: Engine configuration.
        relay: Relay transport, or None to run without one.
        direct: Direct transport, or None to run without one.
        filedrop: Blob upload client. Created from config on first use.
        home: Directory for received files. Defaults to the store's parent.
    """

    def __init__(
        self,
        identity: Identity,
        store: MessageStore,
        config: Optional[RaabtaConfig] = None,
        relay: Optional[RelayTransport] = None,
        direct: Optional[DirectTransport] = None,
        filedrop: Optional[FileDropClient] = None,
        home: Optional[Path] = None,
    ) -> None:
        self.identity = identity
        self.store = store
        self.config = config or RaabtaConfig()
        self.relay = relay
        self.direct = direct
        self.home = resolve_home(home)
        self.files_dir = self.home / "files"
        self.dedup = Deduplicator()
        self.contacts: dict[str, Contact] = {}
        self.conversations: dict[str, list[Message]] = {}
        self.active_conversation: Optional[str] = None
        self.decrypt_failures = 0
        self.duplicates = 0
        self._filedrop = filedrop
        self._message_callbacks: list[MessageCallback] = []
        self._progress_callbacks: list[ProgressCallback] = []
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._started = False

    @classmethod
    def from_home(
        cls,
        home: Optional[Path] = None,
        connector: Optional[Connector] = None,
        rendezvous: Optional[Rendezvous] = None,
    ) -> "MessageSynchronizer":
        """Build the engine and both transports from ``<home>``.

        The direct transport is only created when a rendezvous is given
        or ``signaling_url`` is configured.

        Raises:
            IdentityError: If no identity exists yet.
        """
        home = resolve_home(home)
        config = load_config(home)
        identity = require_identity(home)
        store = MessageStore(home / "raabta.db")
        relay = RelayTransport.from_config(config, connector=connector) if config.relays else None
        direct = None
        if rendezvous is not None or config.signaling_url:
            direct = DirectTransport.from_config(config, rendezvous=rendezvous)
        return cls(identity, store, config=config, relay=relay, direct=direct, home=home)

    @property
    def address(self) -> str:
        return self.identity.public_key

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def start(self) -> None:
        """Sweep expired messages and load state from the store."""
        if self._started:
            return
        self.store.delete_expired()
        self.contacts = {c.address: c for c in self.store.list_contacts()}
        self.conversations = {address: [] for address in self.contacts}
        for message in self.store.all_messages():
            self.conversations.setdefault(message.conversation_id, []).append(message)
        self.dedup.rebuild(self.store.known_ids())
        self._started = True
        logger.info(
            "Loaded %d contact(s) and %d conversation(s)",
            len(self.contacts), len(self.conversations),
        )

    async def connect(self) -> dict[str, bool]:
        """Bring up every configured transport and start applying inbound events.

        Transport failures are logged, never raised: a session with no
        reachable transport still works offline.
        """
        self.start()
        if self.relay is not None:
            await self.relay.connect(self.identity)
        if self.direct is not None:
            try:
                await self.direct.init(self.identity)
            except TransportError as exc:
                logger.warning("Direct transport unavailable: %s", exc)

        if not self._tasks:
            for transport in (self.relay, self.direct):
                if transport is not None:
                    self._tasks.append(asyncio.create_task(self._pump(transport.inbound)))
            self._tasks.append(asyncio.create_task(self._writer()))
        return self.is_connected

    async def disconnect(self) -> None:
        """Stop the writer and close every transport."""
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        if self.relay is not None:
            await self.relay.close()
        if self.direct is not None:
            await self.direct.close()
        if self._filedrop is not None:
            await self._filedrop.close()
        logger.info("Synchronizer disconnected")

    @property
    def is_connected(self) -> dict[str, bool]:
        return {
            TransportKind.RELAY.value: bool(self.relay and self.relay.connected),
            TransportKind.DIRECT.value: bool(self.direct and self.direct.connected),
        }

    def status(self) -> dict[str, Any]:
        """Snapshot of transports and local state."""
        return {
            "address": self.address,
            "username": self.identity.username,
            "connected": self.is_connected,
            "relays": self.relay.open_endpoints if self.relay else [],
            "direct_send_only": bool(self.direct and self.direct.send_only),
            "direct_rooms": self.direct.open_rooms if self.direct else [],
            "pending_transfers": self.direct.pending_transfers if self.direct else 0,
            "contacts": len(self.contacts),
            "messages": sum(len(msgs) for msgs in self.conversations.values()),
            "unread": self.total_unread(),
            "duplicates": self.duplicates,
            "decrypt_failures": self.decrypt_failures,
        }

    async def flush(self) -> None:
        """Wait until every queued inbound event has been applied."""
        for transport in (self.relay, self.direct):
            if transport is not None:
                await transport.inbound.join()
        await self._events.join()

    async def _pump(self, source: asyncio.Queue) -> None:
        while True:
            event = await source.get()
            await self._events.put(event)
            source.task_done()

    async def _writer(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self.apply(event)
            except StoreError as exc:
                logger.error("Failed to apply inbound event: %s", exc)
            except Exception:
                logger.exception("Unexpected error applying %s", type(event).__name__)
            finally:
                self._events.task_done()

    # -------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------

    def on_incoming_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def on_file_progress(self, callback: ProgressCallback) -> None:
        self._progress_callbacks.append(callback)

    def _emit_message(self, message: Message) -> None:
        for callback in self._message_callbacks:
            try:
                callback(message)
            except Exception as exc:
                logger.warning("Message callback failed: %s", exc)

    def _emit_progress(self, progress: FileProgress) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(progress)
            except Exception as exc:
                logger.warning("Progress callback failed: %s", exc)

    # -------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------

    async def send_text(self, address: str, text: str) -> Message:
        """Encrypt and send a text message.

        Returns:
            The persisted message. ``delivered_via`` lists the transports
            that accepted it; ``delivery_errors`` holds the rest.

        Raises:
            ValueError: If the text is blank.
            RaabtaError: If the address is not a valid public key.
        """
        if not text.strip():
            raise ValueError("Cannot send an empty message")
        return await self._send_payload(address, encode_text(text), text=text)

    async def send_file(
        self,
        address: str,
        data: bytes,
        filename: str,
        mime_type: str = "application/octet-stream",
        caption: str = "",
    ) -> Message:
        """Encrypt a file, upload it, and send its descriptor as a message.

        Raises:
            UploadError: If the blob could not be uploaded.
        """
        key = self._shared_secret(address)
        blob, iv = encrypt_file(data, key)
        url = await self.filedrop.upload(blob)
        attachment = FileAttachment(
            name=filename, mime_type=mime_type, size=len(data), url=url, iv=iv,
        )
        payload = encode_file_payload(attachment, caption)
        return await self._send_payload(address, payload, text=caption, attachment=attachment)

    async def send_file_direct(
        self,
        address: str,
        data: bytes,
        filename: str,
        mime_type: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None,
    ) -> Message:
        """Stream a file over the direct channel and record it as sent.

        Raises:
            TransportError: If no direct transport is available or the
                channel cannot be opened.
        """
        if self.direct is None:
            raise TransportError("Direct transport not configured")
        self.start()
        self._ensure_contact(address)

        def report(progress: FileProgress) -> None:
            if on_progress is not None:
                on_progress(progress)
            self._emit_progress(progress)

        transfer_id = await self.direct.send_file(
            address, data, filename, mime_type, on_progress=report,
        )
        message = self._new_message(
            conversation_id=address,
            sender=self.address,
            recipient=address,
            is_sent=True,
            is_read=True,
            envelope_id=transfer_id,
            attachment=FileAttachment(
                name=filename, mime_type=mime_type, size=len(data), transfer_id=transfer_id,
            ),
            delivered_via=[TransportKind.DIRECT],
        )
        return self._persist_sent(message)

    async def _send_payload(
        self,
        address: str,
        payload: str,
        text: str,
        attachment: Optional[FileAttachment] = None,
    ) -> Message:
        self.start()
        ciphertext = encrypt(payload, self._shared_secret(address))
        digest = content_hash(ciphertext)
        self._ensure_contact(address)

        delivered_via, errors, envelope_id = await self._deliver(address, ciphertext, digest)
        if not delivered_via:
            logger.warning("Message to %s not delivered by any transport", address[:16])

        message = self._new_message(
            conversation_id=address,
            sender=self.address,
            recipient=address,
            text=text,
            ciphertext=ciphertext,
            is_sent=True,
            is_read=True,
            envelope_id=envelope_id,
            content_hash=digest,
            attachment=attachment,
            delivered_via=delivered_via,
            delivery_errors=errors,
        )
        return self._persist_sent(message)

    async def _deliver(
        self, address: str, ciphertext: str, digest: str,
    ) -> tuple[list[TransportKind], dict[str, str], Optional[str]]:
        """Attempt every available transport concurrently. Never raises."""
        attempts: dict[TransportKind, Any] = {}
        if self.relay is not None:
            attempts[TransportKind.RELAY] = self.relay.publish(
                self.identity, to_transport_address(address), ciphertext,
            )
        if self.direct is not None and self.direct.peer_id is not None:
            attempts[TransportKind.DIRECT] = self.direct.send_message(address, ciphertext, digest)

        outcomes = await asyncio.gather(*attempts.values(), return_exceptions=True)
        delivered: list[TransportKind] = []
        errors: dict[str, str] = {}
        envelope_id: Optional[str] = None
        for kind, outcome in zip(attempts, outcomes):
            if isinstance(outcome, TransportError):
                errors[kind.value] = str(outcome)
                logger.warning("%s delivery to %s failed: %s", kind.value, address[:16], outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                delivered.append(kind)
                if kind is TransportKind.RELAY:
                    envelope_id = outcome.event_id
        return delivered, errors, envelope_id

    def _persist_sent(self, message: Message) -> Message:
        stored = self.store.append_message(message)
        if stored is None:
            raise StoreError(f"Sent message collides with an existing one ({message.content_hash})")
        self.dedup.mark_seen(stored.envelope_id, stored.content_hash)
        self._insert(stored)
        return stored

    # -------------------------------------------------------------------
    # Receiving
    # -------------------------------------------------------------------

    def apply(self, event: TransportEvent) -> Optional[Message]:
        """Apply one transport event. Returns the message it produced, if any."""
        if isinstance(event, InboundEnvelope):
            return self.process_envelope(event)
        if isinstance(event, ReceivedFile):
            return self._apply_received_file(event)
        if isinstance(event, DeleteRequest):
            self._apply_delete(event)
        elif isinstance(event, FileProgress):
            self._emit_progress(event)
        return None

    def process_envelope(
        self,
        envelope: InboundEnvelope,
        restore_own: bool = False,
        hint: Optional[str] = None,
    ) -> Optional[Message]:
        """Run one inbound ciphertext through dedup, decrypt and persist.

        Args:
            envelope: Transport-neutral inbound unit.
            restore_own: Accept envelopes authored by the local identity
                as sent messages (history backfill). Otherwise they are
                treated as self-notifications and skipped.
            hint: Native address to try before any other decrypt candidate.

        Returns:
            The stored message, or None if it was a duplicate, a
            self-notification, or could not be decrypted.
        """
        self.start()
        if self.dedup.is_duplicate(envelope):
            self.duplicates += 1
            logger.debug("Duplicate envelope %s via %s", envelope.envelope_id[:16], envelope.transport.value)
            return None

        own = self.dedup.is_self(envelope, self.address)
        if own and not restore_own:
            self.dedup.mark_seen(envelope.envelope_id)
            return None

        peer = envelope.recipient if own else envelope.sender
        if not peer:
            logger.warning("Envelope %s has no counterpart address", envelope.envelope_id[:16])
            return None

        opened = self._open(envelope.ciphertext, self._candidates(peer, hint))
        if opened is None:
            self.decrypt_failures += 1
            self.dedup.mark_seen(envelope.envelope_id, envelope.content_hash)
            logger.warning(
                "Could not decrypt envelope %s from %s via %s",
                envelope.envelope_id[:16], peer[:16], envelope.transport.value,
            )
            return None
        address, plaintext = opened

        text, attachment = decode_payload(plaintext)
        self._ensure_contact(address, seen_at=envelope.timestamp)
        message = self._new_message(
            conversation_id=address,
            sender=self.address if own else address,
            recipient=address if own else self.address,
            text=text,
            ciphertext=envelope.ciphertext,
            timestamp=envelope.timestamp,
            is_sent=own,
            is_read=own or self.active_conversation == address,
            envelope_id=envelope.envelope_id,
            content_hash=envelope.content_hash or content_hash(envelope.ciphertext),
            attachment=attachment,
            delivered_via=[envelope.transport],
        )
        return self._persist_received(message)

    def _candidates(self, transport_address: str, hint: Optional[str] = None) -> list[str]:
        known = list(self.contacts)
        if hint:
            known.insert(0, hint)
        return to_native_addresses(transport_address, known)

    def _open(self, ciphertext: str, candidates: list[str]) -> Optional[tuple[str, str]]:
        for candidate in candidates:
            try:
                key = derive_shared_secret(self.identity.private_key, candidate)
                return candidate, decrypt(ciphertext, key)
            except (ValueError, DecryptError) as exc:
                logger.debug("Candidate %s did not decrypt: %s", candidate[:18], exc)
        return None

    def _persist_received(self, message: Message) -> Optional[Message]:
        stored = self.store.append_message(message)
        self.dedup.mark_seen(message.envelope_id, message.content_hash)
        if stored is None:
            self.duplicates += 1
            logger.debug("Store already holds envelope %s", message.envelope_id)
            return None
        self._insert(stored)
        self._emit_message(stored)
        return stored

    def _apply_received_file(self, received: ReceivedFile) -> Optional[Message]:
        self.start()
        if self.dedup.seen(received.transfer_id):
            self.duplicates += 1
            return None

        safe_id = _UNSAFE_FILENAME.sub("_", received.transfer_id).strip("._") or "transfer"
        safe_name = _UNSAFE_FILENAME.sub("_", received.filename).strip("._") or "file"
        path = self.files_dir / f"{safe_id}-{safe_name}"
        if path.resolve().parent != self.files_dir.resolve():
            logger.warning("Refusing to save transfer %r outside %s", received.transfer_id, self.files_dir)
            self.dedup.mark_seen(received.transfer_id)
            return None
        try:
            self.files_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(received.data)
        except OSError as exc:
            logger.error("Could not save transfer %s: %s", received.transfer_id, exc)
            self.dedup.mark_seen(received.transfer_id)
            return None
        logger.info("Saved %s (%d bytes) from %s", path.name, received.size, received.sender[:16])

        self._ensure_contact(received.sender, seen_at=received.timestamp)
        message = self._new_message(
            conversation_id=received.sender,
            sender=received.sender,
            recipient=self.address,
            timestamp=received.timestamp,
            is_read=self.active_conversation == received.sender,
            envelope_id=received.transfer_id,
            attachment=FileAttachment(
                name=received.filename,
                mime_type=received.mime_type,
                size=received.size,
                local_path=path,
                transfer_id=received.transfer_id,
            ),
            delivered_via=[TransportKind.DIRECT],
        )
        return self._persist_received(message)

    def _apply_delete(self, request: DeleteRequest) -> None:
        deleted = self.store.delete_by_content_hash(request.sender, request.content_hash)
        if not deleted:
            logger.debug("Delete request for unknown message %s", request.content_hash[:16])
            return
        conversation = self.conversations.get(request.sender, [])
        self.conversations[request.sender] = [m for m in conversation if m.id not in deleted]
        logger.info("Peer %s deleted %d message(s)", request.sender[:16], len(deleted))

    # -------------------------------------------------------------------
    # History backfill
    # -------------------------------------------------------------------

    async def reconcile(self, address: str) -> list[Message]:
        """Backfill a conversation from relay history.

        Envelopes run through the normal inbound pipeline, so anything
        already stored is skipped. Envelopes we authored are restored as
        sent messages.

        Returns:
            Messages newly added by the backfill.
        """
        if self.relay is None:
            raise TransportError("Relay transport not configured")
        self.start()
        envelopes = await self.relay.fetch_history(self.identity, to_transport_address(address))
        restored = []
        for envelope in envelopes:
            message = self.process_envelope(envelope, restore_own=True, hint=address)
            if message is not None:
                restored.append(message)
        logger.info("Reconciled %s: %d of %d envelope(s) new",
                    address[:16], len(restored), len(envelopes))
        return restored

    # -------------------------------------------------------------------
    # Conversation bookkeeping
    # -------------------------------------------------------------------

    def add_contact(self, address: str, display_name: str = "") -> bool:
        """Add a contact by native address. Returns False if already known.

        Raises:
            RaabtaError: If the address is not a valid public key.
        """
        self.start()
        if address in self.contacts:
            return False
        self._shared_secret(address)
        self._ensure_contact(address, display_name=display_name)
        return True

    def remove_contact(self, address: str) -> bool:
        """Forget a contact and delete its conversation."""
        self.start()
        removed = self.store.remove_contact(address)
        self.contacts.pop(address, None)
        self.conversations.pop(address, None)
        if self.active_conversation == address:
            self.active_conversation = None
        return removed

    def contact_list(self) -> list[Contact]:
        return list(self.contacts.values())

    def sorted_contacts(self) -> list[Contact]:
        """Contacts by most recent activity (last message, else when added)."""
        def activity(contact: Contact) -> int:
            last = self.last_message(contact.address)
            return last.timestamp if last else contact.added_at

        return sorted(self.contacts.values(), key=activity, reverse=True)

    def messages_for(self, address: str) -> list[Message]:
        return list(self.conversations.get(address, []))

    def last_message(self, address: str) -> Optional[Message]:
        messages = self.conversations.get(address)
        return messages[-1] if messages else None

    def unread_count(self, address: str) -> int:
        return sum(
            1 for m in self.conversations.get(address, [])
            if m.sender == address and not m.is_read
        )

    def total_unread(self) -> int:
        return sum(self.unread_count(address) for address in self.contacts)

    def set_active_conversation(self, address: Optional[str]) -> None:
        """Focus a conversation; its messages are marked read."""
        self.active_conversation = address
        if address:
            self.mark_as_read(address)

    def mark_as_read(self, address: str) -> int:
        changed = self.store.mark_read(address)
        for message in self.conversations.get(address, []):
            if message.sender == address:
                message.is_read = True
        return changed

    async def delete_message(self, message: Message) -> bool:
        """Delete a message locally and ask the peer to drop its copy.

        The peer is only told over an open direct channel; failures to
        notify are logged.
        """
        if message.id is None or not self.store.delete_message(message.id):
            return False
        conversation = self.conversations.get(message.conversation_id, [])
        self.conversations[message.conversation_id] = [m for m in conversation if m.id != message.id]

        if self.direct is not None and self.direct.peer_id is not None and message.content_hash:
            try:
                await self.direct.send_delete(message.conversation_id, message.content_hash)
            except TransportError as exc:
                logger.info("Could not notify peer of deletion: %s", exc)
        return True

    async def download_attachment(self, message: Message) -> bytes:
        """Fetch and decrypt a message's file.

        Raises:
            ValueError: If the message carries no retrievable file.
            UploadError: If the blob could not be downloaded.
            DecryptError: If the blob does not open with the shared secret.
        """
        attachment = message.attachment
        if attachment is None:
            raise ValueError("Message has no attachment")
        if attachment.local_path is not None:
            return Path(attachment.local_path).read_bytes()
        if not attachment.url or not attachment.iv:
            raise ValueError(f"Attachment {attachment.name} has no download URL")
        blob = await self.filedrop.download(attachment.url)
        return decrypt_file(blob, self._shared_secret(message.conversation_id), attachment.iv)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    @property
    def filedrop(self) -> FileDropClient:
        if self._filedrop is None:
            self._filedrop = FileDropClient(self.config.filedrop_server)
        return self._filedrop

    def _shared_secret(self, address: str) -> bytes:
        try:
            return derive_shared_secret(self.identity.private_key, address)
        except ValueError as exc:
            raise RaabtaError(f"Invalid address {address!r}: {exc}") from exc

    def _ensure_contact(
        self, address: str, display_name: str = "", seen_at: Optional[int] = None,
    ) -> Contact:
        contact = self.contacts.get(address)
        if contact is not None:
            if seen_at and seen_at > contact.last_seen:
                contact.last_seen = seen_at
                self.store.touch_contact(address, seen_at)
            return contact

        contact = Contact(address=address, display_name=display_name)
        self.store.add_contact(contact)
        self.contacts[address] = contact
        self.conversations.setdefault(address, [])
        logger.info("New contact %s", address[:16])
        return contact

    def _new_message(self, **fields: Any) -> Message:
        timestamp = fields.setdefault("timestamp", now_ms())
        fields["expires_at"] = timestamp + self.config.message_retention_days * DAY_MS
        return Message(**fields)

    def _insert(self, message: Message) -> None:
        conversation = self.conversations.setdefault(message.conversation_id, [])
        bisect.insort(conversation, message, key=lambda m: (m.timestamp, m.id or 0))
