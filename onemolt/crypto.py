"""
Signature verification for molt keys.

Molts identify themselves with Ed25519 keys sent over the wire as base64
SPKI DER (a 12-byte ASN.1 header followed by the 32 raw key bytes) and
sign challenges with 64-byte Ed25519 signatures, also base64.

All functions are pure. Malformed input yields False/None and never raises.
"""

import binascii
from typing import Optional, Union

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import VerifyKey

from .util import b64d, b64e, sha256_hex

# SubjectPublicKeyInfo header for an Ed25519 key (OID 1.3.101.112)
ED25519_SPKI_PREFIX = bytes.fromhex("302a300506032b6570032100")
RAW_KEY_LENGTH = 32
SPKI_KEY_LENGTH = len(ED25519_SPKI_PREFIX) + RAW_KEY_LENGTH
SIGNATURE_LENGTH = 64

PSEUDONYM_PREFIX = "unverified:"


def _decode(value: str) -> Optional[bytes]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return b64d(value.strip())
    except (binascii.Error, ValueError):
        return None


def raw_public_key(public_key_b64: str) -> Optional[bytes]:
    """
    Extract the 32 raw key bytes from a base64 key.

    Accepts the SPKI container form and a bare 32-byte key.
    """
    der = _decode(public_key_b64)
    if der is None:
        return None
    if len(der) == SPKI_KEY_LENGTH and der.startswith(ED25519_SPKI_PREFIX):
        return der[len(ED25519_SPKI_PREFIX):]
    if len(der) == RAW_KEY_LENGTH:
        return der
    return None


def encode_spki_public_key(raw: bytes) -> str:
    """Wrap raw Ed25519 key bytes in the SPKI container and base64 them."""
    if len(raw) != RAW_KEY_LENGTH:
        raise ValueError("Ed25519 public keys are 32 bytes")
    return b64e(ED25519_SPKI_PREFIX + raw)


def is_valid_public_key(public_key_b64: str) -> bool:
    """Structural check: base64 SPKI container holding an Ed25519 key."""
    der = _decode(public_key_b64)
    if der is None or len(der) != SPKI_KEY_LENGTH or not der.startswith(ED25519_SPKI_PREFIX):
        return False
    try:
        VerifyKey(der[len(ED25519_SPKI_PREFIX):])
    except (CryptoError, ValueError, TypeError):
        return False
    return True


def is_valid_signature(signature_b64: str) -> bool:
    """Structural check: base64 that decodes to exactly 64 bytes."""
    sig = _decode(signature_b64)
    return sig is not None and len(sig) == SIGNATURE_LENGTH


def verify_signature(message: Union[str, bytes], signature_b64: str, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        message: The signed message (str is UTF-8 encoded)
        signature_b64: Base64-encoded 64-byte signature
        public_key_b64: Base64-encoded SPKI (or raw) public key

    Returns:
        True if signature is valid, False otherwise
    """
    raw = raw_public_key(public_key_b64)
    sig = _decode(signature_b64)
    if raw is None or sig is None or len(sig) != SIGNATURE_LENGTH:
        return False
    if isinstance(message, str):
        message = message.encode("utf-8")
    if not isinstance(message, bytes):
        return False
    try:
        VerifyKey(raw).verify(message, sig)
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False


def calculate_device_id(public_key_b64: str) -> Optional[str]:
    """
    Device id convention shared with the molt CLI: hex SHA-256 of the raw
    32 key bytes. The SPKI header is stripped first, so both key forms
    produce the same id.
    """
    raw = raw_public_key(public_key_b64)
    if raw is None:
        return None
    return sha256_hex(raw)


def pseudonymous_key_id(public_key_b64: str) -> str:
    """Stable pseudo-identity for signature-valid but unregistered molts."""
    digest = sha256_hex(public_key_b64)
    return PSEUDONYM_PREFIX + digest[:16]
