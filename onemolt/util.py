"""
Utility functions for the OneMolt registry.

Provides hashing, encoding, identifier and time helpers shared by the
registry, session and forum modules.
"""

import base64
import hashlib
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Union


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def now_ms() -> int:
    """Get current Unix time in milliseconds (the molt CLI timestamp unit)."""
    return int(time.time() * 1000)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Strict base64 decode; raises ValueError on malformed input."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def utc_rfc3339(ts_epoch: Optional[int]) -> Optional[str]:
    """Convert Unix timestamp to RFC3339 UTC string."""
    if ts_epoch is None:
        return None
    return datetime.fromtimestamp(ts_epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def generate_token() -> str:
    """Generate an opaque random session token (UUID4 string)."""
    return str(uuid.uuid4())


def generate_id() -> str:
    """Generate a record identifier (UUID4 string)."""
    return str(uuid.uuid4())
