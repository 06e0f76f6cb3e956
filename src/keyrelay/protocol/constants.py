from __future__ import annotations

PROTO_VER = "1.0"

MAX_MSG_BYTES = 64 * 1024
MAX_JSON_DEPTH = 4
MAX_JSON_KEYS = 16
MAX_B64_LENGTH = 2 * MAX_MSG_BYTES

OUTBOX_SIZE = 256
MAX_CONNECTIONS = 1000

FINGERPRINT_LEN = 32

CLIENT_TYPES = {"register", "message", "copy", "ping"}

# websocket close codes
CLOSE_TRY_AGAIN_LATER = 1013


class ErrorKind:
    INPUT = "input"
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    DECRYPT = "decrypt"
    SERVER = "server"
