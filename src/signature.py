"""
Ed25519 request signature verification.

Every interaction Discord delivers carries two headers:
- X-Signature-Ed25519: hex signature
- X-Signature-Timestamp: the timestamp that was signed

The signed message is the timestamp immediately followed by the raw request
body, byte for byte. The body must not be decoded and re-encoded before
verification or the signature will never match.
"""

import logging

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

logger = logging.getLogger(__name__)

PUBLIC_KEY_BYTES = 32


class ConfigurationError(Exception):
    """The public key is missing or malformed."""


def load_public_key(public_key_hex):
    """Convert the application's hex public key into a VerifyKey."""
    if not public_key_hex:
        raise ConfigurationError("Missing PUBLIC_KEY env var.")
    try:
        key = bytes.fromhex(public_key_hex.strip())
    except ValueError as e:
        raise ConfigurationError(f"PUBLIC_KEY is not valid hex: {e}") from e
    if len(key) != PUBLIC_KEY_BYTES:
        raise ConfigurationError(
            f"PUBLIC_KEY invalid length. Expected 32 bytes (64 hex chars), got {len(key)} bytes."
        )
    return VerifyKey(key)


def try_load_public_key(public_key_hex):
    """Like load_public_key, but logs and returns None so the server can still start."""
    try:
        public_key = load_public_key(public_key_hex)
    except ConfigurationError as e:
        logger.error(f"PUBLIC_KEY error: {e}")
        return None
    logger.info("PUBLIC_KEY loaded")
    return public_key


def _as_bytes(value):
    if isinstance(value, str):
        return value.encode()
    return bytes(value)


def verify_signature(signature_hex, timestamp, raw_body, public_key):
    """Return True only if signature_hex is a valid signature of timestamp + raw_body.

    Never raises. Every failure (no key, missing header, bad hex, wrong
    length, bad signature) returns the same False.
    """
    if public_key is None or not signature_hex or not timestamp:
        return False
    try:
        message = _as_bytes(timestamp) + _as_bytes(raw_body)
        public_key.verify(message, bytes.fromhex(signature_hex))
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True
