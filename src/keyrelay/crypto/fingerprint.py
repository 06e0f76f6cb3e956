from __future__ import annotations
import re
from keyrelay.crypto.primitives import md5
from keyrelay.errors import InvalidSecretError

_SECRET_RE = re.compile(r"^[A-Za-z0-9]+$")

def validate_secret(secret: str) -> str:
    if secret is None:
        raise InvalidSecretError("secret is required")
    s = secret.strip()
    if not s:
        raise InvalidSecretError("secret must not be empty")
    if not _SECRET_RE.match(s):
        raise InvalidSecretError("secret may only contain letters and digits")
    return s

def fingerprint(secret: str) -> str:
    """Group identifier for a validated secret.

    Lowercase hex MD5 of the UTF-8 secret, the same digest the browser clients
    compute, so every client holding the secret lands in the same group.
    """
    return md5(secret.encode("utf-8")).hex()
