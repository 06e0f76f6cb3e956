from __future__ import annotations


class ClientError(Exception):
    pass

class InputError(ClientError):
    """Rejected locally before any network activity."""

class InvalidSecretError(InputError):
    pass

class EmptyMessageError(InputError):
    pass

class NotConnectedError(ClientError):
    pass

class DecryptionError(ClientError):
    pass


class EnvelopeError(Exception):
    """Malformed, unknown or out-of-order envelope received by the relay."""


class ConfigError(Exception):
    pass
