"""
Encrypted blob upload service client.

Files sent over the relay are too large for an event, so they are
sealed with the conversation's shared secret and uploaded to a blob
server; only the URL and IV travel inside the encrypted message. The
server never sees plaintext or the original filename.

Usage:
    blob, iv = encrypt_file(data, shared_secret)
    async with FileDropClient(server) as client:
        url = await client.upload(blob)
        sealed = await client.download(url)
    data = decrypt_file(sealed, shared_secret, iv)
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Optional

import aiohttp

from .config import DEFAULT_FILEDROP_SERVER
from .crypto import decrypt_bytes, encrypt_bytes
from .errors import UploadError

logger = logging.getLogger("raabta.filedrop")


def encrypt_file(data: bytes, key: bytes) -> tuple[bytes, str]:
    """Seal file bytes with AES-256-GCM. Returns ``(blob, iv_hex)``."""
    nonce, blob = encrypt_bytes(data, key)
    return blob, nonce.hex()


def decrypt_file(blob: bytes, key: bytes, iv: str) -> bytes:
    """Open a blob produced by :func:`encrypt_file`.

    Raises:
        DecryptError: If the blob does not authenticate under ``key``.
    """
    return decrypt_bytes(blob, key, bytes.fromhex(iv))


def _parse_upload_response(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()
    if isinstance(data, dict):
        for field in ("url", "link", "download"):
            if data.get(field):
                return str(data[field])
    return body.strip()


class FileDropClient:
    """Upload and fetch encrypted blobs.

    Args:
        server: Base URL of the upload server.
        session: Optional shared aiohttp session.
        timeout: Total request timeout in seconds.
    """

    def __init__(
        self,
        server: str = DEFAULT_FILEDROP_SERVER,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 60.0,
    ) -> None:
        self.server = server.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "FileDropClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def upload(self, blob: bytes) -> str:
        """Upload an already-encrypted blob under a random name.

        Returns:
            str: Download URL reported by the server.

        Raises:
            UploadError: On a network failure or non-2xx response.
        """
        form = aiohttp.FormData()
        form.add_field(
            "file", blob,
            filename=f"{uuid.uuid4()}.enc",
            content_type="application/octet-stream",
        )
        url = f"{self.server}/upload"
        try:
            async with self._ensure_session().post(url, data=form) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise UploadError(f"Upload failed: {resp.status} {resp.reason}")
        except aiohttp.ClientError as exc:
            raise UploadError(f"Upload to {self.server} failed: {exc}") from exc

        link = _parse_upload_response(body)
        if not link:
            raise UploadError("Upload server returned an empty response")
        logger.info("Uploaded %d bytes to %s", len(blob), self.server)
        return link

    async def download(self, url: str) -> bytes:
        """Fetch an encrypted blob.

        Raises:
            UploadError: On a network failure or non-2xx response.
        """
        try:
            async with self._ensure_session().get(url) as resp:
                if resp.status >= 400:
                    raise UploadError(f"Download failed: {resp.status} {resp.reason}")
                data = await resp.read()
        except aiohttp.ClientError as exc:
            raise UploadError(f"Download from {url} failed: {exc}") from exc
        logger.debug("Downloaded %d bytes from %s", len(data), url)
        return data
