from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from keyrelay.client.state import ConnectionContext, Phase
from keyrelay.config import ClientConfig
from keyrelay.crypto.cipher import decrypt, encrypt
from keyrelay.crypto.fingerprint import fingerprint, validate_secret
from keyrelay.errors import DecryptionError, EmptyMessageError, NotConnectedError
from keyrelay.protocol.constants import ErrorKind
from keyrelay.protocol.envelopes import (
    CopyEnvelope,
    MessageEnvelope,
    RegisterEnvelope,
    optional_str,
    parse_server_envelope,
)

logger = structlog.get_logger()

Connector = Callable[[str], Awaitable[Any]]


class RelayClient:
    """Client side of the keyed relay.

    Commands (``set_key``, ``clear_key``, ``send``, ``copy``, ``reconnect``)
    and transport callbacks all run on one event loop. Observers are plain
    callables: ``on_state_change(phase)``, ``on_message(plaintext)``,
    ``on_copy(plaintext, content_type)`` and ``on_error(kind, detail)``.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        connector: Optional[Connector] = None,
        on_state_change: Optional[Callable[[Phase], None]] = None,
        on_message: Optional[Callable[[str], None]] = None,
        on_copy: Optional[Callable[[str, str], None]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
    ):
        self.config = config or ClientConfig()
        self._connector = connector or self._ws_connect
        self.on_state_change = on_state_change
        self.on_message = on_message
        self.on_copy = on_copy
        self.on_error = on_error
        self._ctx: Optional[ConnectionContext] = None

    @property
    def phase(self) -> Phase:
        return self._ctx.phase if self._ctx else Phase.DISCONNECTED

    @property
    def group_id(self) -> Optional[str]:
        return self._ctx.group_id if self._ctx else None

    async def _ws_connect(self, url: str):
        import websockets
        return await websockets.connect(url, ping_interval=self.config.ping_interval)

    # -- commands --

    async def set_key(self, secret: str) -> str:
        secret = validate_secret(secret)
        if self._ctx is not None:
            await self.clear_key()

        ctx = ConnectionContext(secret=secret, group_id=fingerprint(secret))
        self._ctx = ctx
        logger.info("client_key_set", group_id=ctx.group_id)
        await self._connect(ctx)
        return ctx.group_id

    async def clear_key(self) -> None:
        ctx = self._ctx
        if ctx is None:
            return
        self._ctx = None
        ctx.discarded = True
        self._cancel_reconnect(ctx)
        await self._teardown(ctx)
        ctx.cleanup()
        logger.info("client_key_cleared")
        self._emit(self.on_state_change, Phase.DISCONNECTED)

    async def reconnect(self) -> None:
        ctx = self._ctx
        if ctx is None:
            raise NotConnectedError("no key set")
        ctx.attempts = 0
        await self._connect(ctx)

    async def send(self, plaintext: str) -> None:
        text = (plaintext or "").strip()
        if not text:
            raise EmptyMessageError("message must not be empty")
        ctx = self._require_connected()
        env = MessageEnvelope(key_hash=ctx.group_id, encrypted_message=encrypt(text, ctx.secret))
        await self._send_raw(ctx, env.dumps())

    async def copy(self, content: str, content_type: str = "text/plain") -> None:
        if not content:
            raise EmptyMessageError("content must not be empty")
        ctx = self._require_connected()
        env = CopyEnvelope(
            key_hash=ctx.group_id,
            encrypted_content=encrypt(content, ctx.secret),
            content_type=content_type,
        )
        await self._send_raw(ctx, env.dumps())

    # -- connection lifecycle --

    async def _connect(self, ctx: ConnectionContext) -> None:
        ctx.generation += 1
        gen = ctx.generation
        self._cancel_reconnect(ctx)
        await self._teardown(ctx)
        if ctx.discarded or gen != ctx.generation:
            return

        self._set_phase(ctx, Phase.CONNECTING)
        url = self.config.url
        self._set_phase(ctx, Phase.AWAITING_OPEN_ACK)
        try:
            ws = await asyncio.wait_for(self._connector(url), timeout=self.config.open_timeout)
        except Exception as e:
            if ctx.discarded or gen != ctx.generation:
                return
            if isinstance(e, asyncio.TimeoutError):
                detail = f"no connection within {self.config.open_timeout}s"
            else:
                detail = str(e) or type(e).__name__
            self._fail(ctx, detail)
            return

        if ctx.discarded or gen != ctx.generation:
            await self._close_quietly(ws)
            return

        ctx.ws = ws
        try:
            await ws.send(RegisterEnvelope(key_hash=ctx.group_id).dumps())
        except Exception as e:
            if ctx.ws is ws and not ctx.discarded:
                ctx.ws = None
                await self._close_quietly(ws)
                self._fail(ctx, str(e) or type(e).__name__)
            return
        if ctx.discarded or gen != ctx.generation:
            return

        ctx.attempts = 0
        self._set_phase(ctx, Phase.CONNECTED)
        ctx.rx_task = asyncio.create_task(self._recv_loop(ctx, ws))
        logger.info("client_registered", group_id=ctx.group_id, url=url)

    async def _recv_loop(self, ctx: ConnectionContext, ws: Any) -> None:
        detail = "connection closed"
        try:
            async for raw in ws:
                if ctx.discarded or ctx.ws is not ws:
                    return
                self._dispatch(ctx, raw)
        except Exception as e:
            detail = str(e) or type(e).__name__

        if ctx.discarded or ctx.ws is not ws:
            return
        ctx.ws = None
        ctx.rx_task = None
        await self._close_quietly(ws)
        self._fail(ctx, detail)

    def _fail(self, ctx: ConnectionContext, detail: str) -> None:
        if ctx.discarded:
            return
        self._set_phase(ctx, Phase.ERROR)
        logger.warning("client_transport_failed", group_id=ctx.group_id, error=detail)
        self._emit(self.on_error, ErrorKind.TRANSPORT, detail)
        self._schedule_reconnect(ctx)

    def _schedule_reconnect(self, ctx: ConnectionContext) -> None:
        if ctx.discarded:
            return
        if ctx.reconnect_task is not None and not ctx.reconnect_task.done():
            return
        delay = self.config.reconnect_delay(ctx.attempts)
        ctx.attempts += 1
        logger.info("client_reconnect_scheduled", group_id=ctx.group_id, delay=delay, attempt=ctx.attempts)
        ctx.reconnect_task = asyncio.create_task(self._reconnect_later(ctx, delay))

    async def _reconnect_later(self, ctx: ConnectionContext, delay: float) -> None:
        await asyncio.sleep(delay)
        if ctx.discarded:
            return
        ctx.reconnect_task = None
        await self._connect(ctx)

    def _cancel_reconnect(self, ctx: ConnectionContext) -> None:
        task, ctx.reconnect_task = ctx.reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _teardown(self, ctx: ConnectionContext) -> None:
        rx, ws = ctx.rx_task, ctx.ws
        ctx.rx_task, ctx.ws = None, None
        if rx is not None and not rx.done() and rx is not asyncio.current_task():
            rx.cancel()
            try:
                await rx
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await self._close_quietly(ws)

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("client_close_failed", error=str(e))

    # -- send / receive --

    def _require_connected(self) -> ConnectionContext:
        ctx = self._ctx
        if ctx is None or ctx.phase is not Phase.CONNECTED or ctx.ws is None:
            raise NotConnectedError("not connected to relay")
        return ctx

    async def _send_raw(self, ctx: ConnectionContext, text: str) -> None:
        ws = ctx.ws
        try:
            await ws.send(text)
        except Exception as e:
            if ctx.ws is ws and not ctx.discarded:
                await self._teardown(ctx)
                self._fail(ctx, str(e) or type(e).__name__)
            raise NotConnectedError("send failed, reconnecting") from e

    def _dispatch(self, ctx: ConnectionContext, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            msg = parse_server_envelope(raw)
        except ValueError as e:
            logger.warning("client_bad_frame", error=str(e))
            self._emit(self.on_error, ErrorKind.PROTOCOL, "unparseable frame from relay")
            return

        kind = msg["type"]
        if kind == "message":
            text = self._open(ctx, optional_str(msg, "encryptedMessage"))
            if text is not None:
                self._emit(self.on_message, text)
        elif kind == "copy":
            text = self._open(ctx, optional_str(msg, "encryptedContent"))
            if text is not None:
                content_type = optional_str(msg, "contentType") or "text/plain"
                self._emit(self.on_copy, text, content_type)
        elif kind == "error":
            detail = optional_str(msg, "message") or "server error"
            logger.warning("relay_error", group_id=ctx.group_id, error=detail)
            self._emit(self.on_error, ErrorKind.SERVER, detail)
        else:
            logger.debug("relay_frame", type=kind)

    def _open(self, ctx: ConnectionContext, ciphertext: Optional[str]) -> Optional[str]:
        try:
            if not ciphertext:
                raise DecryptionError("missing ciphertext")
            return decrypt(ciphertext, ctx.secret)
        except DecryptionError:
            ctx.decrypt_failures += 1
            logger.warning("decryption_failed", group_id=ctx.group_id, failures=ctx.decrypt_failures)
            self._emit(self.on_error, ErrorKind.DECRYPT, "decryption failed")
            return None

    # -- observers --

    def _set_phase(self, ctx: ConnectionContext, phase: Phase) -> None:
        if ctx.phase is phase:
            return
        ctx.phase = phase
        logger.debug("client_phase", phase=phase.value, group_id=ctx.group_id)
        self._emit(self.on_state_change, phase)

    def _emit(self, cb: Optional[Callable[..., None]], *args: Any) -> None:
        if cb is None:
            return
        try:
            cb(*args)
        except Exception as e:
            logger.error("client_callback_failed", callback=getattr(cb, "__name__", repr(cb)), error=str(e))
