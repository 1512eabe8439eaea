"""
Security primitives for the integration gateway.

Key generation, one-way digests, HMAC payload signing and constant-time
comparison. Nothing in this module touches the database.
"""
import hmac
import hashlib
import secrets


API_KEY_PREFIX = "vg_"
WEBHOOK_SECRET_PREFIX = "whsec_"
KEY_PREFIX_LENGTH = 8
SECRET_MASK_LENGTH = 12


def _to_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def constant_time_equals(a: bytes | str, b: bytes | str) -> bool:
    """Compare two secrets without leaking where they differ."""
    return hmac.compare_digest(_to_bytes(a), _to_bytes(b))


def hash_api_key(plaintext: str) -> str:
    """One-way SHA-256 digest of an API key, hex encoded."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def key_prefix(plaintext: str) -> str:
    """Display/lookup prefix: the first 8 characters of the plaintext key."""
    return plaintext[:KEY_PREFIX_LENGTH]


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (plaintext, key_hash, key_prefix). The plaintext must be handed to
        the caller once and then discarded.
    """
    plaintext = f"{API_KEY_PREFIX}{secrets.token_hex(32)}"
    return plaintext, hash_api_key(plaintext), key_prefix(plaintext)


def generate_webhook_secret() -> str:
    """Generate a shared secret used to sign deliveries for one webhook."""
    return f"{WEBHOOK_SECRET_PREFIX}{secrets.token_hex(32)}"


def mask_secret(secret: str) -> str:
    """Short prefix plus ellipsis, safe to show after creation."""
    return f"{secret[:SECRET_MASK_LENGTH]}..."


def sign_payload(payload: bytes | str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a raw webhook body."""
    return hmac.new(
        secret.encode("utf-8"),
        _to_bytes(payload),
        hashlib.sha256
    ).hexdigest()


def verify_signature(payload: bytes | str, signature: str, secret: str) -> bool:
    """Recompute the signature for payload and compare in constant time."""
    return constant_time_equals(sign_payload(payload, secret), signature)
