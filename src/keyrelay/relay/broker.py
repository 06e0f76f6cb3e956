from __future__ import annotations
import asyncio
import secrets
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

import structlog

from keyrelay.errors import EnvelopeError
from keyrelay.protocol.constants import MAX_CONNECTIONS, MAX_MSG_BYTES, OUTBOX_SIZE
from keyrelay.protocol.envelopes import (
    CopyEnvelope,
    CopyResponseEnvelope,
    PingEnvelope,
    PongEnvelope,
    RegisterEnvelope,
    RegisterSuccessEnvelope,
    error_envelope,
    parse_client_envelope,
)

logger = structlog.get_logger()

def now() -> float:
    return time.time()


class SessionState(Enum):
    PENDING = "pending"
    REGISTERED = "registered"
    CLOSED = "closed"


class Session:
    """One live transport connection.

    Outbound frames go through a bounded queue drained by ``Broker.drain`` so
    a slow peer never stalls forwarding to the rest of its group.
    """

    def __init__(self, transport: Any, outbox_size: int = OUTBOX_SIZE):
        self.id = secrets.token_hex(8)
        self.transport = transport
        self.group_id: Optional[str] = None
        self.state = SessionState.PENDING
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self.connected_at = now()
        self.dropped = 0

    def enqueue(self, text: str) -> bool:
        if self.state is SessionState.CLOSED:
            return False
        try:
            self.outbox.put_nowait(text)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True


class Group:
    def __init__(self, group_id: str):
        self.id = group_id
        self.members: Dict[str, Session] = {}
        self.lock = asyncio.Lock()
        self.closed = False


class Broker:
    def __init__(
        self,
        max_connections: int = MAX_CONNECTIONS,
        max_message_bytes: int = MAX_MSG_BYTES,
        outbox_size: int = OUTBOX_SIZE,
    ):
        self.max_connections = max_connections
        self.max_message_bytes = max_message_bytes
        self.outbox_size = outbox_size
        self.sessions: Dict[str, Session] = {}
        self.groups: Dict[str, Group] = {}

    def at_capacity(self) -> bool:
        return len(self.sessions) >= self.max_connections

    def open_session(self, transport: Any) -> Session:
        session = Session(transport, self.outbox_size)
        self.sessions[session.id] = session
        logger.info("session_opened", session_id=session.id, sessions=len(self.sessions))
        return session

    @asynccontextmanager
    async def _group(self, group_id: str, create: bool = False) -> AsyncIterator[Optional[Group]]:
        # Holds the group's lock for the body. A group emptied under its lock
        # is marked closed and dropped, so waiters retry on a fresh one.
        while True:
            group = self.groups.get(group_id)
            if group is None:
                if not create:
                    yield None
                    return
                group = Group(group_id)
                self.groups[group_id] = group
                logger.debug("group_created", group_id=group_id)

            async with group.lock:
                if group.closed:
                    continue
                try:
                    yield group
                finally:
                    if not group.members:
                        group.closed = True
                        if self.groups.get(group_id) is group:
                            del self.groups[group_id]
                        logger.debug("group_collected", group_id=group_id)
                return

    async def _leave(self, session: Session) -> None:
        group_id = session.group_id
        if group_id is None:
            return
        async with self._group(group_id) as group:
            if group is not None:
                group.members.pop(session.id, None)
            session.group_id = None
        logger.info("session_left_group", session_id=session.id, group_id=group_id)

    async def register(self, session: Session, group_id: str) -> None:
        if session.state is SessionState.CLOSED:
            return

        if session.state is SessionState.REGISTERED and session.group_id == group_id:
            session.enqueue(RegisterSuccessEnvelope(key_hash=group_id).dumps())
            return

        if session.group_id is not None:
            await self._leave(session)
            if session.state is SessionState.CLOSED:
                return
            session.state = SessionState.PENDING

        async with self._group(group_id, create=True) as group:
            if session.state is SessionState.CLOSED:
                return
            group.members[session.id] = session
            session.group_id = group_id
            session.state = SessionState.REGISTERED
            members = len(group.members)

        logger.info("session_registered", session_id=session.id, group_id=group_id, members=members)
        session.enqueue(RegisterSuccessEnvelope(key_hash=group_id).dumps())

    async def forward(self, session: Session, key_hash: str, raw: str) -> int:
        """Fan ``raw`` out unchanged to every other member of the sender's group."""
        if session.state is not SessionState.REGISTERED or session.group_id is None:
            raise EnvelopeError("register first")
        if key_hash != session.group_id:
            raise EnvelopeError("key mismatch")

        delivered = 0
        dropped = 0
        async with self._group(session.group_id) as group:
            if group is None:
                return 0
            for peer in group.members.values():
                # closing peers stay listed until their leave gets the lock
                if peer is session or peer.state is SessionState.CLOSED:
                    continue
                if peer.enqueue(raw):
                    delivered += 1
                else:
                    dropped += 1
                    logger.warning("forward_dropped", session_id=peer.id, group_id=group.id)

        logger.debug("forwarded", session_id=session.id, group_id=session.group_id,
                     delivered=delivered, dropped=dropped)
        return delivered

    async def handle_text(self, session: Session, raw: str) -> None:
        if session.state is SessionState.CLOSED:
            return

        if len(raw.encode("utf-8")) > self.max_message_bytes:
            self._reply_error(session, "message too large")
            return

        try:
            env = parse_client_envelope(raw, max_bytes=self.max_message_bytes)
            if isinstance(env, PingEnvelope):
                session.enqueue(PongEnvelope().dumps())
            elif isinstance(env, RegisterEnvelope):
                await self.register(session, env.key_hash)
            else:
                await self.forward(session, env.key_hash, raw)
                if isinstance(env, CopyEnvelope):
                    session.enqueue(CopyResponseEnvelope().dumps())
        except EnvelopeError as e:
            logger.info("envelope_rejected", session_id=session.id, error=str(e))
            self._reply_error(session, str(e))

    def handle_binary(self, session: Session, data: bytes) -> None:
        if session.state is SessionState.CLOSED:
            return
        logger.info("envelope_rejected", session_id=session.id, error="binary frame", size=len(data))
        self._reply_error(session, "text frames only")

    def _reply_error(self, session: Session, message: str) -> None:
        if not session.enqueue(error_envelope(message)):
            logger.warning("error_reply_dropped", session_id=session.id)

    async def close_session(self, session: Session) -> None:
        # Safe to repeat: a second call finishes a leave that was cancelled
        # before it got the group lock.
        session.state = SessionState.CLOSED
        await self._leave(session)
        if self.sessions.pop(session.id, None) is None:
            return
        logger.info("session_closed", session_id=session.id, sessions=len(self.sessions),
                    dropped=session.dropped)

    async def drain(self, session: Session) -> None:
        while True:
            text = await session.outbox.get()
            try:
                await session.transport.send_text(text)
            except Exception as e:
                logger.warning("session_send_failed", session_id=session.id, error=str(e))
                await self.close_session(session)
                return

    def stats(self) -> Dict[str, int]:
        registered = sum(1 for s in self.sessions.values() if s.state is SessionState.REGISTERED)
        return {"clients": len(self.sessions), "registered": registered, "groups": len(self.groups)}
