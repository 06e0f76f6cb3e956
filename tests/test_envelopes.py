import json

import pytest

from keyrelay.errors import EnvelopeError
from keyrelay.protocol.envelopes import (
    CopyEnvelope,
    MessageEnvelope,
    PingEnvelope,
    RegisterEnvelope,
    error_envelope,
    parse_client_envelope,
    parse_server_envelope,
)


def test_register_parses_with_wire_names():
    env = parse_client_envelope('{"type":"register","keyHash":"abc"}')
    assert isinstance(env, RegisterEnvelope)
    assert env.key_hash == "abc"


def test_message_and_copy_parse():
    msg = parse_client_envelope('{"type":"message","keyHash":"g","encryptedMessage":"U2Fs"}')
    assert isinstance(msg, MessageEnvelope)
    assert msg.encrypted_message == "U2Fs"

    cp = parse_client_envelope('{"type":"copy","keyHash":"g","encryptedContent":"U2Fs"}')
    assert isinstance(cp, CopyEnvelope)
    assert cp.content_type == "text/plain"

    assert isinstance(parse_client_envelope('{"type":"ping"}'), PingEnvelope)


def test_dumps_uses_wire_names():
    out = json.loads(MessageEnvelope(key_hash="g", encrypted_message="ct").dumps())
    assert out == {"type": "message", "keyHash": "g", "encryptedMessage": "ct"}


@pytest.mark.parametrize("raw, fragment", [
    ("not json", "invalid json"),
    ("[1, 2]", "invalid json"),
    ('{"keyHash":"g"}', "unknown message type"),
    ('{"type":"shout"}', "unknown message type"),
    ('{"type":"register"}', "keyHash"),
    ('{"type":"register","keyHash":""}', "keyHash"),
    ('{"type":"register","keyHash":42}', "keyHash"),
    ('{"type":"message","keyHash":"g"}', "encryptedMessage"),
    ('{"type":"message","keyHash":"g","encryptedMessage":{"a":{"b":{"c":{"d":{}}}}}}', "invalid json"),
])
def test_malformed_envelopes_are_rejected(raw, fragment):
    with pytest.raises(EnvelopeError) as exc:
        parse_client_envelope(raw)
    assert fragment in str(exc.value)


def test_oversized_frame_is_rejected():
    raw = json.dumps({"type": "message", "keyHash": "g", "encryptedMessage": "A" * 2000})
    with pytest.raises(EnvelopeError):
        parse_client_envelope(raw, max_bytes=1000)


def test_error_envelope():
    assert json.loads(error_envelope("register first")) == {"type": "error", "message": "register first"}


def test_parse_server_envelope_requires_type():
    assert parse_server_envelope('{"type":"pong","t":1}')["type"] == "pong"
    with pytest.raises(ValueError):
        parse_server_envelope('{"message":"x"}')
