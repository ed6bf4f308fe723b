from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

try:
    from cryptography.exceptions import InvalidKey
    from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "cryptography is required for sync key hashing. "
        "Install dependencies with: pip install -e . "
        f"Original error: {type(e).__name__}: {e}"
    ) from e


_SCHEME = "scrypt"
_N = 2**14
_R = 8
_P = 1
_LENGTH = 32
_KEY_ID_BYTES = 8
_SECRET_BYTES = 32


@dataclass(frozen=True)
class IssuedKey:
    """A freshly minted sync key. `plaintext` is shown to the caller once and never stored."""

    key_id: str
    plaintext: str
    hashed: str


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64d(text: str) -> bytes:
    pad = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + pad)


def _kdf(salt: bytes, *, n: int = _N, r: int = _R, p: int = _P) -> Scrypt:
    return Scrypt(salt=salt, length=_LENGTH, n=n, r=r, p=p)


def hash_secret(secret: str) -> str:
    salt = secrets.token_bytes(16)
    digest = _kdf(salt).derive(secret.encode("utf-8"))
    return f"{_SCHEME}${_N}${_R}${_P}${_b64e(salt)}${_b64e(digest)}"


def verify_secret(secret: str, hashed: Optional[str]) -> bool:
    if not secret or not hashed:
        return False
    parts = hashed.split("$")
    if len(parts) != 6 or parts[0] != _SCHEME:
        return False
    try:
        n, r, p = int(parts[1]), int(parts[2]), int(parts[3])
        salt = _b64d(parts[4])
        expected = _b64d(parts[5])
    except (ValueError, TypeError):
        return False
    try:
        # Constant-time comparison happens inside verify().
        _kdf(salt, n=n, r=r, p=p).verify(secret.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True


def split_sync_key(key: Optional[str]) -> tuple[str, str] | None:
    """Sync keys look like `<key_id>.<secret>`; the id is public and indexed."""
    s = (key or "").strip()
    if "." not in s:
        return None
    key_id, _, secret = s.partition(".")
    if not key_id or not secret:
        return None
    return key_id, secret


def generate_sync_key() -> IssuedKey:
    key_id = secrets.token_hex(_KEY_ID_BYTES)
    secret = _b64e(secrets.token_bytes(_SECRET_BYTES))
    return IssuedKey(key_id=key_id, plaintext=f"{key_id}.{secret}", hashed=hash_secret(secret))


def hash_access_token(token: str) -> str:
    return hashlib.sha256(token.strip().encode("utf-8")).hexdigest()


def generate_access_token() -> str:
    return secrets.token_urlsafe(32)
