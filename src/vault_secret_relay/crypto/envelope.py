"""Symmetric encryption of secret values into a self-describing envelope.

Envelope format::

    ENC:<nonce hex>:<tag hex>:<ciphertext hex>

AES-256-GCM with a fresh random 96-bit nonce per call and a 128-bit tag.  The
``ENC:`` prefix lets a reader tell encrypted values from plaintext ones in the
same secret set without any outside state.

Key handling: the session key is a free-form string supplied by the pipeline.
It is UTF-8 encoded and then truncated or zero-padded to 32 bytes.  This keeps
pipeline-supplied keys usable as-is; it is not a key-derivation function and
should not be copied into new designs.

Security Note:
    Never log plaintext, ciphertext or key material.
"""

from __future__ import annotations

import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

ENVELOPE_PREFIX = "ENC:"
KEY_LENGTH = 32  # AES-256
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
DERIVED_KEY_LENGTH = 32


def normalize_key(key: str) -> bytes:
    """Encode *key* and truncate or zero-pad it to ``KEY_LENGTH`` bytes."""
    raw = key.encode("utf-8")
    return raw[:KEY_LENGTH].ljust(KEY_LENGTH, b"\x00")


def is_encrypted(value: str) -> bool:
    return value.startswith(ENVELOPE_PREFIX)


def encrypt(plaintext: str, key: str) -> str:
    """Encrypt *plaintext* under *key* and return the envelope string."""
    cipher = AESGCM(normalize_key(key))
    nonce = os.urandom(NONCE_SIZE)
    sealed = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return f"{ENVELOPE_PREFIX}{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt(envelope: str, key: str) -> str:
    """Return the plaintext inside *envelope*.

    Values without the ``ENC:`` prefix are returned unchanged.  A malformed
    envelope or a failed authentication check also returns the input
    unchanged; callers treat an unchanged return as "could not verify".
    """
    if not is_encrypted(envelope):
        return envelope

    try:
        nonce_hex, tag_hex, ct_hex = envelope[len(ENVELOPE_PREFIX):].split(":")
        nonce = bytes.fromhex(nonce_hex)
        tag = bytes.fromhex(tag_hex)
        ciphertext = bytes.fromhex(ct_hex)
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise ValueError("bad nonce or tag length")
        plaintext = AESGCM(normalize_key(key)).decrypt(nonce, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except (ValueError, InvalidTag) as exc:
        logger.warning("Could not decrypt envelope, returning it unchanged: %s", type(exc).__name__)
        return envelope


def derive_key_from_namespace(namespace: str) -> str:
    """Return the first 32 hex chars of SHA-1(*namespace*).  Deterministic."""
    digest = hashlib.sha1(namespace.encode("utf-8")).hexdigest()[:DERIVED_KEY_LENGTH]
    logger.debug("Derived key material from namespace: %s...", digest[:8])
    return digest
