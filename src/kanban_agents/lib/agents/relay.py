"""Local agent relay: bridge cloud commands to an agent on the user's machine.

Each user gets one ``LocalAgentRelay`` holding the live WebSocket connections
opened by their local agent process. All relays live on the server's event
loop and are only touched from it, so per-user operations are serialized
without locks. Connection state is process memory only; a restart drops it
and the local agent reconnects.

Wire protocol (JSON text frames):

- local agent → relay: ``{"type": "HEARTBEAT"}``
- relay → local agent: ``{"type": "HEARTBEAT_ACK"}`` and
  ``{"type": "EXECUTE", "payload": {...}}``
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from kanban_agents.lib.errors import RelayUnavailableError

__all__ = [
    "DEFAULT_HEARTBEAT_WINDOW_SECONDS",
    "LocalAgentRelay",
    "RelayRegistry",
    "RelaySocket",
]

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_WINDOW_SECONDS = 30.0

_HEARTBEAT = "HEARTBEAT"
_HEARTBEAT_ACK = "HEARTBEAT_ACK"
_EXECUTE = "EXECUTE"


class RelaySocket(Protocol):
    """The part of a WebSocket the relay needs (Starlette's fits)."""

    async def send_text(self, data: str) -> None: ...


class LocalAgentRelay:
    """Live connections and liveness for one user's local agent."""

    def __init__(
        self,
        user_id: str,
        *,
        clock: Callable[[], float] = time.time,
        heartbeat_window: float = DEFAULT_HEARTBEAT_WINDOW_SECONDS,
    ) -> None:
        self.user_id = user_id
        self.heartbeat_window = heartbeat_window
        self._clock = clock
        self._sockets: list[RelaySocket] = []
        self._last_heartbeat = 0.0

    @property
    def session_count(self) -> int:
        return len(self._sockets)

    def _record_heartbeat(self) -> None:
        self._last_heartbeat = self._clock()

    def accept(self, socket: RelaySocket) -> None:
        """Register an accepted socket; acceptance counts as a heartbeat."""
        if socket not in self._sockets:
            self._sockets.append(socket)
        self._record_heartbeat()
        logger.info(
            "Local agent connected for user %s (%d live)",
            self.user_id,
            self.session_count,
        )

    def disconnect(self, socket: RelaySocket) -> None:
        if socket in self._sockets:
            self._sockets.remove(socket)
            logger.info(
                "Local agent disconnected for user %s (%d live)",
                self.user_id,
                self.session_count,
            )

    async def handle_message(self, socket: RelaySocket, raw: str) -> None:
        """Handle one inbound frame; malformed or unknown frames are ignored."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed relay frame from user %s", self.user_id)
            return
        if not isinstance(message, dict):
            return

        if message.get("type") == _HEARTBEAT:
            self._record_heartbeat()
            try:
                await socket.send_text(json.dumps({"type": _HEARTBEAT_ACK}))
            except Exception:
                logger.warning(
                    "Heartbeat ack failed for user %s; dropping socket",
                    self.user_id,
                    exc_info=True,
                )
                self.disconnect(socket)

    async def broadcast(self, message: dict[str, Any]) -> int:
        """Send ``message`` to every live socket; return how many received it.

        A socket whose send fails is removed.
        """
        frame = json.dumps(message)
        delivered = 0
        for socket in list(self._sockets):
            try:
                await socket.send_text(frame)
            except Exception:
                logger.warning(
                    "Relay send failed for user %s; dropping socket",
                    self.user_id,
                    exc_info=True,
                )
                self.disconnect(socket)
                continue
            delivered += 1
        return delivered

    async def execute(self, payload: Any) -> dict[str, str]:
        """Forward an ``EXECUTE`` command to the user's local agent.

        Raises:
            RelayUnavailableError: No local agent is connected, or every
                send failed.
        """
        if not self._sockets:
            raise RelayUnavailableError("No local agent connected")
        delivered = await self.broadcast({"type": _EXECUTE, "payload": payload})
        if delivered == 0:
            raise RelayUnavailableError("No local agent connected")
        return {"status": "queued"}

    def status(self) -> dict[str, Any]:
        """Return ``{connected, isLive, lastHeartbeat, sessionCount}``.

        ``lastHeartbeat`` is epoch milliseconds, ``0`` if never seen.
        """
        connected = bool(self._sockets)
        is_live = (
            connected and self._clock() - self._last_heartbeat < self.heartbeat_window
        )
        return {
            "connected": connected,
            "isLive": is_live,
            "lastHeartbeat": int(self._last_heartbeat * 1000),
            "sessionCount": self.session_count,
        }


class RelayRegistry:
    """Per-user relays, created lazily on first use."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        heartbeat_window: float = DEFAULT_HEARTBEAT_WINDOW_SECONDS,
    ) -> None:
        self._clock = clock
        self._heartbeat_window = heartbeat_window
        self._relays: dict[str, LocalAgentRelay] = {}

    def get(self, user_id: str) -> LocalAgentRelay:
        relay = self._relays.get(user_id)
        if relay is None:
            relay = LocalAgentRelay(
                user_id,
                clock=self._clock,
                heartbeat_window=self._heartbeat_window,
            )
            self._relays[user_id] = relay
        return relay
