from __future__ import annotations
import base64
import binascii
import hashlib
from keyrelay.protocol.constants import MAX_B64_LENGTH

def md5(b: bytes) -> bytes:
    return hashlib.md5(b).digest()

def evp_bytes_to_key(password: bytes, salt: bytes, key_len: int = 32, iv_len: int = 16) -> tuple[bytes, bytes]:
    """OpenSSL EVP_BytesToKey with MD5 and a single iteration."""
    out, block = b"", b""
    while len(out) < key_len + iv_len:
        block = md5(block + password + salt)
        out += block
    return out[:key_len], out[key_len:key_len + iv_len]

def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")

def b64d(s: str) -> bytes:
    if len(s) > MAX_B64_LENGTH:
        raise ValueError(f"Base64 too long: {len(s)} > {MAX_B64_LENGTH}")
    try:
        return base64.b64decode(s, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64: {e}") from e
