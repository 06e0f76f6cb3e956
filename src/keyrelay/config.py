from __future__ import annotations
import json
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from keyrelay.errors import ConfigError
from keyrelay.protocol.constants import MAX_CONNECTIONS, MAX_MSG_BYTES, OUTBOX_SIZE


class RelayConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    ws_path: str = Field(default="/ws", pattern=r"^/")
    max_connections: int = Field(default=MAX_CONNECTIONS, ge=1)
    max_message_bytes: int = Field(default=MAX_MSG_BYTES, ge=256)
    outbox_size: int = Field(default=OUTBOX_SIZE, ge=1)
    ping_interval: float = Field(default=20.0, gt=0)
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class ClientConfig(BaseModel):
    url: str = "ws://localhost:8080/ws"
    reconnect_interval: float = Field(default=3.0, gt=0)
    max_reconnect_interval: float = Field(default=30.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    open_timeout: float = Field(default=5.0, gt=0)
    ping_interval: Optional[float] = Field(default=20.0, gt=0)

    def reconnect_delay(self, attempts: int) -> float:
        """Delay before reconnect attempt number ``attempts`` (0-based)."""
        delay = self.reconnect_interval * (self.backoff_factor ** min(attempts, 32))
        return min(max(delay, self.reconnect_interval), self.max_reconnect_interval)


class Settings(BaseModel):
    relay: RelayConfig = Field(default_factory=RelayConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "info"


def load_settings(path: Optional[str] = None) -> Settings:
    if path is None:
        return Settings()

    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {p}") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read config file {p}: {e}") from e

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid config file {p}: {e}") from e
