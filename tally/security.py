"""
Voter credential codec.

Covers:
  - Voter-key generation (human-friendly, shown to the voter once)
  - Verification-token generation (emailed link for address confirmation)
  - Encryption-at-rest of the voter key (AES-256-CBC, scrypt-derived key)
  - Lookup hash of the voter key (SHA-256 of the normalised key)

Credential forms
----------------
1. Plaintext key   - generated once, delivered out-of-band, never stored
2. Stored key      - "<iv hex>:<ciphertext hex>"; only decrypted for
                     administrative recovery or the one-time hash self-heal
3. Key hash        - the ONLY form compared at login

Records written before encryption was introduced hold the plaintext key with
no ":" separator; decrypt_voter_key returns those unchanged.
"""
import hashlib
import re
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from tally.errors import DecryptionError

VOTER_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
VOTER_KEY_LENGTH = 10

# scrypt parameters match the values the stored keys were produced with
# (salt "salt", N=16384, r=8, p=1, 32-byte output).
_KDF_SALT = b"salt"
_KDF_N = 2 ** 14
_KDF_R = 8
_KDF_P = 1
_KEY_BYTES = 32
_IV_BYTES = 16

_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Key and token generation
# ---------------------------------------------------------------------------

def generate_voter_key() -> str:
    """Return a 10-character voter key with no ambiguous characters (I, O, 0, 1).

    secrets.choice draws each character uniformly, so there is no modulo bias.
    """
    return "".join(secrets.choice(VOTER_KEY_ALPHABET) for _ in range(VOTER_KEY_LENGTH))


def generate_verification_token() -> str:
    """Return 32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


def generate_token_expiry(hours: int = 24) -> datetime:
    """Expiry timestamp ``hours`` from now (UTC)."""
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def format_voter_key_for_display(key: str) -> str:
    """Group a key in blocks of four for emails, e.g. ``AB23 CD89 XY``."""
    compact = normalize_voter_key(key)
    if not compact:
        return key
    return " ".join(compact[i:i + 4] for i in range(0, len(compact), 4))


# ---------------------------------------------------------------------------
# Lookup hash
# ---------------------------------------------------------------------------

def normalize_voter_key(key: str) -> str:
    """Strip all whitespace and upper-case."""
    return _WHITESPACE.sub("", key or "").upper()


def hash_voter_key(key: str) -> str:
    """SHA-256 hex digest of the normalised key.

    Case and spacing of the entered key do not change the digest.
    """
    return hashlib.sha256(normalize_voter_key(key).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Encryption at rest
# ---------------------------------------------------------------------------

@lru_cache(maxsize=8)
def _derive_key(secret: str) -> bytes:
    kdf = Scrypt(salt=_KDF_SALT, length=_KEY_BYTES, n=_KDF_N, r=_KDF_R, p=_KDF_P)
    return kdf.derive(secret.encode("utf-8"))


def encrypt_voter_key(plaintext: str, secret: str) -> str:
    """Encrypt a voter key; a fresh IV is drawn on every call."""
    iv = secrets.token_bytes(_IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(_derive_key(secret)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def decrypt_voter_key(stored_key: str, secret: str) -> str:
    """Reverse encrypt_voter_key.

    A value without ":" is a legacy plaintext key and is returned as-is.
    Raises DecryptionError for malformed hex, a wrong IV length, bad padding
    or non-UTF-8 output.
    """
    if ":" not in stored_key:
        return stored_key

    iv_hex, _, cipher_hex = stored_key.partition(":")
    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(cipher_hex)
    except ValueError as e:
        raise DecryptionError(f"Invalid voter key format: {e}") from e

    if len(iv) != _IV_BYTES or not ciphertext or len(ciphertext) % _IV_BYTES:
        raise DecryptionError("Invalid voter key format")

    try:
        decryptor = Cipher(algorithms.AES(_derive_key(secret)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError(f"Failed to decrypt voter key: {e}") from e
