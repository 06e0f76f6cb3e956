from __future__ import annotations
import secrets
from keyrelay.crypto.primitives import b64d, b64e, evp_bytes_to_key
from keyrelay.errors import DecryptionError

# OpenSSL passphrase format: "Salted__" + 8 byte salt + AES-256-CBC ciphertext
SALT_HEADER = b"Salted__"
SALT_LEN = 8
BLOCK_BITS = 128

def require_aes():
    try:
        from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
        from cryptography.hazmat.primitives import padding
        return Cipher, algorithms, modes, padding
    except ImportError as e:
        raise RuntimeError("Missing dependency 'cryptography'") from e

def encrypt(plaintext: str, secret: str) -> str:
    Cipher, algorithms, modes, padding = require_aes()
    salt = secrets.token_bytes(SALT_LEN)
    key, iv = evp_bytes_to_key(secret.encode("utf-8"), salt)

    padder = padding.PKCS7(BLOCK_BITS).padder()
    data = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    enc = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = enc.update(data) + enc.finalize()
    return b64e(SALT_HEADER + salt + ct)

def decrypt(ciphertext: str, secret: str) -> str:
    Cipher, algorithms, modes, padding = require_aes()
    try:
        blob = b64d(ciphertext)
    except (TypeError, ValueError) as e:
        raise DecryptionError("ciphertext is not valid base64") from e

    head = len(SALT_HEADER) + SALT_LEN
    if not blob.startswith(SALT_HEADER) or len(blob) <= head or (len(blob) - head) % 16:
        raise DecryptionError("ciphertext has an invalid layout")

    salt, ct = blob[len(SALT_HEADER):head], blob[head:]
    key, iv = evp_bytes_to_key(secret.encode("utf-8"), salt)

    dec = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    data = dec.update(ct) + dec.finalize()
    try:
        unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        raw = unpadder.update(data) + unpadder.finalize()
        text = raw.decode("utf-8")
    except ValueError as e:
        # wrong key, corrupted data or a fingerprint collision
        raise DecryptionError("decryption failed") from e

    if not text:
        raise DecryptionError("decryption failed")
    return text
