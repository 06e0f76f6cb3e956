from __future__ import annotations
import time
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from keyrelay.errors import EnvelopeError
from keyrelay.protocol.constants import CLIENT_TYPES, MAX_MSG_BYTES
from keyrelay.protocol.validation import bounded_json_loads, json_dumps_sorted


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def dumps(self) -> str:
        return json_dumps_sorted(self.model_dump(by_alias=True, exclude_none=True))


class RegisterEnvelope(_Envelope):
    type: Literal["register"] = "register"
    key_hash: str = Field(alias="keyHash", min_length=1)


class MessageEnvelope(_Envelope):
    type: Literal["message"] = "message"
    key_hash: str = Field(alias="keyHash", min_length=1)
    encrypted_message: str = Field(alias="encryptedMessage", min_length=1)


class CopyEnvelope(_Envelope):
    type: Literal["copy"] = "copy"
    key_hash: str = Field(alias="keyHash", min_length=1)
    encrypted_content: str = Field(alias="encryptedContent", min_length=1)
    content_type: str = Field(alias="contentType", default="text/plain")


class PingEnvelope(_Envelope):
    type: Literal["ping"] = "ping"


class PongEnvelope(_Envelope):
    type: Literal["pong"] = "pong"
    t: float = Field(default_factory=time.time)


class RegisterSuccessEnvelope(_Envelope):
    type: Literal["register_success"] = "register_success"
    key_hash: str = Field(alias="keyHash")
    message: str = "registered"


class CopyResponseEnvelope(_Envelope):
    type: Literal["copy_response"] = "copy_response"
    success: bool = True
    message: str = "copy request sent"


class ErrorEnvelope(_Envelope):
    type: Literal["error"] = "error"
    message: str


ClientEnvelope = Annotated[
    Union[RegisterEnvelope, MessageEnvelope, CopyEnvelope, PingEnvelope],
    Field(discriminator="type"),
]
_client_envelope = TypeAdapter(ClientEnvelope)


def _describe(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p not in CLIENT_TYPES)
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def parse_client_envelope(raw: str, max_bytes: int = MAX_MSG_BYTES):
    """Decode one client frame into a typed envelope or raise EnvelopeError."""
    try:
        obj = bounded_json_loads(raw, max_bytes=max_bytes)
    except ValueError as e:
        raise EnvelopeError(f"invalid json: {e}") from e

    kind = obj.get("type")
    if not isinstance(kind, str) or kind not in CLIENT_TYPES:
        raise EnvelopeError(f"unknown message type: {kind}")

    try:
        return _client_envelope.validate_python(obj)
    except ValidationError as e:
        raise EnvelopeError(f"invalid {kind} envelope: {_describe(e)}") from e


def parse_server_envelope(raw: str) -> Dict[str, Any]:
    obj = bounded_json_loads(raw)
    if not isinstance(obj.get("type"), str):
        raise ValueError("envelope without type")
    return obj


def error_envelope(message: str) -> str:
    return ErrorEnvelope(message=message).dumps()


def optional_str(obj: Dict[str, Any], key: str) -> Optional[str]:
    v = obj.get(key)
    return v if isinstance(v, str) else None
