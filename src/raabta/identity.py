"""
Local identity — the one key pair this instance speaks as.

The identity is created once (generated or imported) and never
changes afterwards. Logging out deletes it.

Stored at:
    ~/.raabta/identity/identity.json   (mode 0600)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from .crypto import derive_public_key, generate_key_pair, username_for
from .errors import IdentityError
from .models import Identity

logger = logging.getLogger("raabta.identity")

IDENTITY_ID = "current"


def _identity_file(home: Path) -> Path:
    return home / "identity" / "identity.json"


def _save(home: Path, identity: Identity) -> Identity:
    path = _identity_file(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"id": IDENTITY_ID, **identity.model_dump()}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.chmod(path, 0o600)
    return identity


def load_identity(home: Path) -> Optional[Identity]:
    """Load the stored identity, or None if this instance has none yet."""
    path = _identity_file(home)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Identity.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Failed to load identity: %s", exc)
        return None


def require_identity(home: Path) -> Identity:
    """Load the stored identity.

    Raises:
        IdentityError: If no identity has been created yet.
    """
    identity = load_identity(home)
    if identity is None:
        raise IdentityError(f"No identity found in {home} — run 'raabta init' first")
    return identity


def generate_identity(home: Path) -> Identity:
    """Generate and persist a new identity, replacing any existing one."""
    keys = generate_key_pair()
    identity = Identity(
        private_key=keys.private_key,
        public_key=keys.public_key,
        username=username_for(keys.public_key),
    )
    logger.info("Generated identity %s", identity.username)
    return _save(home, identity)


def import_identity(home: Path, private_key: str) -> Identity:
    """Persist an identity from an existing private key.

    Raises:
        IdentityError: If the key is not a valid secp256k1 private key.
    """
    key = private_key.strip().lower()
    try:
        public_key = derive_public_key(key)
    except ValueError as exc:
        raise IdentityError(f"Invalid private key: {exc}") from exc

    identity = Identity(
        private_key=key,
        public_key=public_key,
        username=username_for(public_key),
    )
    logger.info("Imported identity %s", identity.username)
    return _save(home, identity)


def delete_identity(home: Path) -> bool:
    """Forget the local identity. Returns True if one existed."""
    path = _identity_file(home)
    if path.exists():
        path.unlink()
        return True
    return False
