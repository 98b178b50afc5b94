"""
Local durable store — contacts and messages in SQLite.

The store is the single source of truth. Every write is one short
transaction guarded by a lock, so a send and a receive on different
conversations never wait on each other for longer than one append.
A message row is either written with every field or not at all.

Storage layout:
    ~/.raabta/raabta.db
    ├── contacts   (address PK)
    └── messages   (id autoincrement; unique envelope_id, content_hash;
                    indexed by (conversation_id, timestamp) and expires_at)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from ..errors import StoreError
from ..models import Contact, FileAttachment, Message, now_ms

logger = logging.getLogger("raabta.sync.store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    address       TEXT PRIMARY KEY,
    display_name  TEXT NOT NULL DEFAULT '',
    added_at      INTEGER NOT NULL,
    last_seen     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id  TEXT NOT NULL,
    sender           TEXT NOT NULL,
    recipient        TEXT NOT NULL,
    text             TEXT NOT NULL DEFAULT '',
    ciphertext       TEXT NOT NULL DEFAULT '',
    timestamp        INTEGER NOT NULL,
    is_sent          INTEGER NOT NULL DEFAULT 0,
    is_read          INTEGER NOT NULL DEFAULT 0,
    expires_at       INTEGER NOT NULL,
    envelope_id      TEXT UNIQUE,
    content_hash     TEXT UNIQUE,
    attachment       TEXT,
    delivered_via    TEXT NOT NULL DEFAULT '[]',
    delivery_errors  TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages (conversation_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_expires
    ON messages (expires_at);
"""

_MESSAGE_COLUMNS = (
    "conversation_id", "sender", "recipient", "text", "ciphertext", "timestamp",
    "is_sent", "is_read", "expires_at", "envelope_id", "content_hash",
    "attachment", "delivered_via", "delivery_errors",
)


class MessageStore:
    """SQLite-backed contact and message collections.

    Args:
        path: Database file, or ``":memory:"``.
    """

    def __init__(self, path: Union[Path, str]) -> None:
        self.path = path
        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            if str(path) != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open store at {path}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _write(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise StoreError(f"Store write failed: {exc}") from exc

    def _read(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"Store read failed: {exc}") from exc

    # -------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------

    def add_contact(self, contact: Contact) -> bool:
        """Insert a contact. Returns False if the address already exists."""
        cursor = self._write(
            "INSERT OR IGNORE INTO contacts (address, display_name, added_at, last_seen) "
            "VALUES (?, ?, ?, ?)",
            (contact.address, contact.display_name, contact.added_at, contact.last_seen),
        )
        return cursor.rowcount > 0

    def get_contact(self, address: str) -> Optional[Contact]:
        rows = self._read("SELECT * FROM contacts WHERE address = ?", (address,))
        return Contact(**dict(rows[0])) if rows else None

    def list_contacts(self) -> list[Contact]:
        return [Contact(**dict(r)) for r in self._read("SELECT * FROM contacts ORDER BY added_at")]

    def touch_contact(self, address: str, when: Optional[int] = None) -> None:
        self._write(
            "UPDATE contacts SET last_seen = ? WHERE address = ?",
            (when or now_ms(), address),
        )

    def remove_contact(self, address: str) -> bool:
        """Delete a contact and its whole conversation in one transaction."""
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute("DELETE FROM messages WHERE conversation_id = ?", (address,))
                    cursor = self._conn.execute("DELETE FROM contacts WHERE address = ?", (address,))
            except sqlite3.Error as exc:
                raise StoreError(f"Store write failed: {exc}") from exc
        return cursor.rowcount > 0

    # -------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------

    def append_message(self, message: Message) -> Optional[Message]:
        """Persist a message and assign its local id.

        Returns:
            The stored message, or None if its envelope id or content
            hash is already present (a duplicate).

        Raises:
            StoreError: On any other database failure.
        """
        row = _message_to_row(message)
        placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
        sql = f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) VALUES ({placeholders})"
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(sql, tuple(row[c] for c in _MESSAGE_COLUMNS))
            except sqlite3.IntegrityError as exc:
                logger.debug("Duplicate message ignored: %s", exc)
                return None
            except sqlite3.Error as exc:
                raise StoreError(f"Store write failed: {exc}") from exc
        return message.model_copy(update={"id": cursor.lastrowid})

    def messages_for(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation, oldest first."""
        rows = self._read(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp, id",
            (conversation_id,),
        )
        return [_row_to_message(r) for r in rows]

    def all_messages(self) -> list[Message]:
        rows = self._read("SELECT * FROM messages ORDER BY timestamp, id")
        return [_row_to_message(r) for r in rows]

    def get_message(self, message_id: int) -> Optional[Message]:
        rows = self._read("SELECT * FROM messages WHERE id = ?", (message_id,))
        return _row_to_message(rows[0]) if rows else None

    def known_ids(self) -> Iterator[str]:
        """Every recorded envelope id and content hash."""
        for row in self._read("SELECT envelope_id, content_hash FROM messages"):
            if row["envelope_id"]:
                yield row["envelope_id"]
            if row["content_hash"]:
                yield row["content_hash"]

    def mark_read(self, conversation_id: str) -> int:
        """Mark every received message in a conversation read."""
        cursor = self._write(
            "UPDATE messages SET is_read = 1 "
            "WHERE conversation_id = ? AND sender = ? AND is_read = 0",
            (conversation_id, conversation_id),
        )
        return cursor.rowcount

    def delete_message(self, message_id: int) -> bool:
        cursor = self._write("DELETE FROM messages WHERE id = ?", (message_id,))
        return cursor.rowcount > 0

    def delete_by_content_hash(self, conversation_id: str, content_hash: str) -> list[int]:
        """Delete a conversation's message by content hash. Returns deleted ids."""
        rows = self._read(
            "SELECT id FROM messages WHERE conversation_id = ? AND content_hash = ?",
            (conversation_id, content_hash),
        )
        ids = [r["id"] for r in rows]
        if ids:
            self._write(
                "DELETE FROM messages WHERE conversation_id = ? AND content_hash = ?",
                (conversation_id, content_hash),
            )
        return ids

    def delete_expired(self, now: Optional[int] = None) -> int:
        """Retention sweep: drop messages whose expiry has passed."""
        cursor = self._write("DELETE FROM messages WHERE expires_at < ?", (now or now_ms(),))
        if cursor.rowcount:
            logger.info("Swept %d expired message(s)", cursor.rowcount)
        return cursor.rowcount


def _message_to_row(message: Message) -> dict[str, Any]:
    return {
        "conversation_id": message.conversation_id,
        "sender": message.sender,
        "recipient": message.recipient,
        "text": message.text,
        "ciphertext": message.ciphertext,
        "timestamp": message.timestamp,
        "is_sent": int(message.is_sent),
        "is_read": int(message.is_read),
        "expires_at": message.expires_at,
        "envelope_id": message.envelope_id,
        "content_hash": message.content_hash,
        "attachment": message.attachment.model_dump_json() if message.attachment else None,
        "delivered_via": json.dumps([t.value for t in message.delivered_via]),
        "delivery_errors": json.dumps(message.delivery_errors),
    }


def _row_to_message(row: sqlite3.Row) -> Message:
    data = dict(row)
    attachment = data.pop("attachment")
    return Message(
        **{k: v for k, v in data.items() if k not in ("delivered_via", "delivery_errors")},
        attachment=FileAttachment.model_validate_json(attachment) if attachment else None,
        delivered_via=json.loads(data["delivered_via"] or "[]"),
        delivery_errors=json.loads(data["delivery_errors"] or "{}"),
    )
