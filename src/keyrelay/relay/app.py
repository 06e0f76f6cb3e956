from __future__ import annotations
import asyncio
import time
from typing import Optional

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from keyrelay.config import RelayConfig
from keyrelay.protocol.constants import CLOSE_TRY_AGAIN_LATER, PROTO_VER
from keyrelay.relay.broker import Broker

logger = structlog.get_logger()


class HealthResp(BaseModel):
    status: str
    timestamp: int
    clients: int
    registered: int
    groups: int


def build_relay_app(config: Optional[RelayConfig] = None) -> FastAPI:
    config = config or RelayConfig()
    app = FastAPI(title="keyrelay relay", version=PROTO_VER)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    broker = Broker(
        max_connections=config.max_connections,
        max_message_bytes=config.max_message_bytes,
        outbox_size=config.outbox_size,
    )
    app.state.broker = broker

    @app.get("/health", response_model=HealthResp)
    async def health():
        return HealthResp(status="ok", timestamp=int(time.time()), **broker.stats())

    @app.websocket(config.ws_path)
    async def ws_relay(websocket: WebSocket):
        client_ip = websocket.client.host if websocket.client else "unknown"
        if broker.at_capacity():
            logger.warning("relay_full", reason="max_connections", ip=client_ip)
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        # the slot is taken before the handshake await so concurrent opens see it
        session = broker.open_session(websocket)
        writer: Optional[asyncio.Task] = None
        try:
            await websocket.accept()
            writer = asyncio.create_task(broker.drain(session))
            logger.info("client_connected", session_id=session.id, ip=client_ip)

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
                text = message.get("text")
                if text is None:
                    broker.handle_binary(session, message.get("bytes") or b"")
                    continue
                await broker.handle_text(session, text)
        except WebSocketDisconnect as e:
            logger.info("client_disconnected", session_id=session.id, ip=client_ip, code=e.code)
        except Exception as e:
            logger.warning("client_transport_error", session_id=session.id, ip=client_ip, error=str(e))
        finally:
            await broker.close_session(session)
            if writer is not None:
                writer.cancel()
                try:
                    await writer
                except asyncio.CancelledError:
                    pass

    return app
