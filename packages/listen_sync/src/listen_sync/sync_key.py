"""Human-shareable session codes (``XT-7F3K9A``)."""

from __future__ import annotations

import re
import secrets

# No 0/O, 1/I: keys are read aloud and typed by hand.
SYNC_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SYNC_KEY_BODY_LENGTH = 6

_KEY_SHAPE = re.compile(r"^[A-Z]{2}-[A-Z0-9]{6}$")


def generate_sync_key(prefix: str = "XT") -> str:
    """Return a fresh key ``<prefix>-XXXXXX`` drawn from the unambiguous alphabet."""

    body = "".join(secrets.choice(SYNC_KEY_ALPHABET) for _ in range(SYNC_KEY_BODY_LENGTH))
    return f"{prefix.upper()}-{body}"


def normalize_sync_key(raw: str) -> str:
    """Uppercase and strip a key typed by a user."""

    return raw.strip().upper()


def looks_like_sync_key(key: str) -> bool:
    """Cheap shape check before a directory round trip."""

    return bool(_KEY_SHAPE.match(key))
