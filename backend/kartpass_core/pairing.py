from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
import websockets.exceptions

from .zettle import ZettleClient


logger = logging.getLogger(__name__)

LINK_EVENT_TYPES = ("LINK_OFFER_CLAIMED", "LINK_CREATED")

CONNECTION_LOST = "Tilkoblingen til betalingsterminalen ble brutt."
PAIRING_FAILED = "Kunne ikke starte paring med betalingsterminalen."

# seconds a finished session stays readable, and an open one may stay unclaimed
FINISHED_SESSION_TTL = 300.0
OPEN_SESSION_TTL = 900.0


class PairingState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    WAITING_FOR_CODE = "waiting_for_code"
    SUCCESSFUL = "successful"
    FAILED = "failed"


def parse_link_event(message: Any) -> Optional[str]:
    """Return the terminal link id carried by a completion message, if any."""

    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    try:
        event = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(event, dict) or event.get("type") not in LINK_EVENT_TYPES:
        return None

    link_id = event.get("linkId")
    payload = event.get("payload")
    if not link_id and isinstance(payload, dict):
        link_id = payload.get("linkId")
    return str(link_id) if link_id else None


class PairingSession:
    """One attempt at linking a card terminal.

    ``start`` asks Zettle for a pairing code and opens the WebSocket that
    reports when the operator has typed that code on the terminal. A
    background task listens on the socket; any error or close before a link
    id arrives leaves the session ``failed``. ``close`` is the operator
    dismissing the dialog and always returns the session to ``idle``.
    """

    def __init__(
        self,
        zettle: ZettleClient,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.zettle = zettle
        self._connect = connect or websockets.connect
        self._clock = clock
        self.changed_at = clock()
        self.state = PairingState.IDLE
        self.code: Optional[str] = None
        self.link_id: Optional[str] = None
        self.error: Optional[str] = None
        self._socket: Any = None
        self._listener: Optional[asyncio.Task] = None
        self._closing = False
        self._attempt = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "code": self.code,
            "linkId": self.link_id,
            "error": self.error,
        }

    async def start(self) -> Dict[str, Any]:
        if self.state in (PairingState.INITIALIZING, PairingState.WAITING_FOR_CODE):
            raise ValueError("Paring med betalingsterminalen pågår allerede.")

        await self._close_socket()
        self._attempt += 1
        attempt = self._attempt
        self.code = None
        self.link_id = None
        self.error = None
        self._set_state(PairingState.INITIALIZING)

        try:
            offer = await asyncio.to_thread(self.zettle.create_link_offer)
            socket = await self._connect(offer["webSocketUrl"])
        except (RuntimeError, ValueError, OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            if attempt == self._attempt:
                self._fail(str(exc) or PAIRING_FAILED)
            return self.snapshot()

        if attempt != self._attempt:
            # closed by the operator while we were waiting on Zettle
            await self._close_quietly(socket)
            return self.snapshot()

        self._socket = socket
        self.code = offer["code"]
        self._set_state(PairingState.WAITING_FOR_CODE)
        self._listener = asyncio.create_task(self._listen(socket))
        return self.snapshot()

    async def close(self) -> None:
        self._closing = True
        self._attempt += 1
        try:
            listener = self._listener
            if listener is not None and not listener.done():
                listener.cancel()
                try:
                    await listener
                except asyncio.CancelledError:
                    pass
            await self._close_socket()
        finally:
            self._listener = None
            self._closing = False
            self.code = None
            self.error = None
            self._set_state(PairingState.IDLE)

    async def wait(self) -> None:
        """Wait for the socket listener to finish."""

        if self._listener is not None:
            await asyncio.shield(self._listener)

    async def _listen(self, socket: Any) -> None:
        try:
            async for message in socket:
                link_id = parse_link_event(message)
                if not link_id:
                    continue
                self.link_id = link_id
                self._set_state(PairingState.SUCCESSFUL)
                await self._close_socket()
                return
        except Exception:
            if not self._closing:
                logger.exception("Pairing socket failed")
                self._fail(CONNECTION_LOST)
                await self._close_socket()
            return

        if not self._closing and self.state is not PairingState.SUCCESSFUL:
            logger.warning("Pairing socket closed before a terminal was linked")
            self._fail(CONNECTION_LOST)
            await self._close_socket()

    async def _close_socket(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_quietly(socket)

    async def _close_quietly(self, socket: Any) -> None:
        try:
            await socket.close()
        except (websockets.exceptions.WebSocketException, OSError):
            logger.exception("Failed to close pairing socket")

    def _fail(self, message: str) -> None:
        self.error = message
        self._set_state(PairingState.FAILED)

    def _set_state(self, state: PairingState) -> None:
        if state is not self.state:
            logger.info("Pairing session %s -> %s", self.state.value, state.value)
        self.state = state
        self.changed_at = self._clock()

    def expired(self, now: float) -> bool:
        if self.state in (PairingState.INITIALIZING, PairingState.WAITING_FOR_CODE):
            return now - self.changed_at > OPEN_SESSION_TTL
        return now - self.changed_at > FINISHED_SESSION_TTL


class PairingManager:
    """Open pairing sessions keyed by a generated id.

    Sessions the operator never closes are dropped once they expire; see
    ``PairingSession.expired``.
    """

    def __init__(
        self,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connect = connect
        self._clock = clock
        self._sessions: Dict[str, PairingSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, zettle: ZettleClient) -> tuple[str, PairingSession]:
        await self.prune()
        session_id = uuid.uuid4().hex
        session = PairingSession(zettle, connect=self._connect, clock=self._clock)
        self._sessions[session_id] = session
        return session_id, session

    def get(self, session_id: str) -> PairingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValueError("Paringsøkten ble ikke funnet")
        return session

    async def prune(self) -> int:
        now = self._clock()
        expired = [session_id for session_id, session in self._sessions.items() if session.expired(now)]
        for session_id in expired:
            logger.info("Dropping expired pairing session %s", session_id)
            await self.close(session_id)
        return len(expired)

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
