from __future__ import annotations
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Phase(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_OPEN_ACK = "awaiting_open_ack"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectionContext:
    """Everything one committed secret owns on the client.

    Passed explicitly to every transport callback; a discarded context makes
    late callbacks no-ops.
    """
    secret: Optional[str]
    group_id: str
    phase: Phase = Phase.DISCONNECTED
    ws: Any = None
    attempts: int = 0
    generation: int = 0
    reconnect_task: Optional[asyncio.Task] = None
    rx_task: Optional[asyncio.Task] = None
    decrypt_failures: int = 0
    discarded: bool = False

    def cleanup(self):
        self.secret = None
        self.ws = None
        self.rx_task = None
        self.reconnect_task = None
        self.discarded = True
        self.phase = Phase.DISCONNECTED
