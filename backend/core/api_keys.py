"""API key material: generation, hashing and comparison.

Keys look like ``sm_<64 hex chars>`` (256 bits of randomness). Only a salted
bcrypt hash is stored, so a key can be verified but never looked up by hash
equality; see ``services.api_key_service.ApiKeyManager.verify``.
"""

import secrets

from app.config import get_settings
from core.security import pwd_context

KEY_RANDOM_BYTES = 32


def generate_api_key(prefix: str = None) -> str:
    """Generate a new raw API key. Shown to the caller exactly once."""
    prefix = prefix if prefix is not None else get_settings().API_KEY_PREFIX
    return f"{prefix}{secrets.token_hex(KEY_RANDOM_BYTES)}"


def hash_api_key(key: str) -> str:
    """Hash an API key for storage (salted, different on every call)."""
    return pwd_context.hash(key)


def api_key_matches(key: str, key_hash: str) -> bool:
    """Check a raw key against a stored hash.

    bcrypt re-derives the hash and compares the digests in constant time.
    """
    try:
        return pwd_context.verify(key, key_hash)
    except ValueError:
        return False


def mask_api_key(key: str) -> str:
    """Mask an API key for display.

    Example: sm_1a2b...9f0e
    """
    if len(key) <= 10:
        return key[:4] + "..." + key[-3:]
    return key[:7] + "..." + key[-4:]
