"""
Relay client, the page-side counterpart of the relay broker.

Owns one persistent WebSocket per page session, reconnects on its own, and
exposes a small verb API (send_request, abort, undo, redo, resume, retry).
Every submission is recorded in a local interaction history once its
terminal answer arrives.

Only one submission may be pending at a time: a second one while the first
is unanswered is rejected through ``on_error`` rather than overwriting it.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from config import ReconnectConfig, client_config, reconnect_config
from relay.protocol import (
    AgentAbort,
    AgentContext,
    AgentDone,
    AgentError,
    AgentRedo,
    AgentRequest,
    AgentResume,
    AgentStatus,
    AgentUndo,
    ClientMessage,
    HandlersMessage,
    HealthRequest,
    HealthResponse,
    ProtocolError,
    encode,
    parse_server_message,
)

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected to relay server"
REQUEST_IN_PROGRESS = "A request is already in progress. Wait for it to finish or abort it first."
NOTHING_TO_RETRY = "Nothing to retry"
CONNECTION_LOST = "Connection to relay server lost"
ABORTED = "Aborted"


@dataclass
class HistoryEntry:
    """One submitted interaction and its outcome."""
    prompt: str
    content: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    action: str = "request"  # request, undo, redo, resume, retry
    agent_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None


Connector = Callable[[str], Awaitable[Any]]


class RelayClient:
    """WebSocket client for the agent relay.

    Observer callbacks are plain callables assigned by the UI:
    ``on_status(message)``, ``on_done(result)``, ``on_error(error)``,
    ``on_handlers(agents)`` and ``on_connection_change(connected)``.

    ``on_handlers`` fires for the broker's ``handlers`` announcement only; a
    ``health`` reply refreshes ``agents`` without a callback. Frames for
    another session id are ignored.
    """

    def __init__(
        self,
        reconnect: Optional[ReconnectConfig] = None,
        max_history: Optional[int] = None,
        connect: Optional[Connector] = None,
    ):
        self.reconnect = reconnect or reconnect_config
        self.max_history = max_history if max_history is not None else client_config.max_history
        self._connector: Connector = connect or websockets.connect

        self.on_status: Optional[Callable[[str], None]] = None
        self.on_done: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.on_handlers: Optional[Callable[[List[str]], None]] = None
        self.on_connection_change: Optional[Callable[[bool], None]] = None

        self.url = ""
        self.session_id = ""
        self.agents: List[str] = []
        self.history: List[HistoryEntry] = []
        self.pending: Optional[HistoryEntry] = None

        self._ws: Any = None
        self._connected = False
        self._should_reconnect = False
        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._attempt = 0
        self._agent_id: Optional[str] = None
        # Health requests sent / answered on the current socket. Agent frames are
        # dropped until the request sent right after an abort is answered.
        self._health_sent = 0
        self._health_answered = 0
        self._abort_fence = 0

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected and self._ws is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connect(self, url: str) -> None:
        """Connect to the relay. Must be called with a running event loop."""
        self.url = url
        self._should_reconnect = True
        self.session_id = str(uuid.uuid4())
        self._attempt = 0
        self._cancel_reconnect()
        if self._task is not None and not self._task.done():
            # Superseded; its cleanup won't run, so settle its state here
            self._task.cancel()
            self._task = None
            self._ws = None
            self._fail_pending(CONNECTION_LOST)
            if self._connected:
                self._set_connected(False)
        self._start()

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting."""
        self._should_reconnect = False
        self._cancel_reconnect()
        ws, task = self._ws, self._task
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing relay socket: {e}")
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run_connection())

    async def _run_connection(self) -> None:
        me = asyncio.current_task()
        try:
            ws = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Relay connection to {self.url} failed: {e}")
            if self._task is me:
                self._task = None
                self._set_connected(False)
                self._schedule_reconnect()
            return

        self._ws = ws
        self._attempt = 0
        self._health_sent = self._health_answered = self._abort_fence = 0
        self._set_connected(True)
        try:
            await self._send_health(ws)
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.info(f"Relay connection closed: {e}")
        finally:
            if self._task is me:
                self._task = None
                self._ws = None
                self._fail_pending(CONNECTION_LOST)
                self._set_connected(False)
                self._schedule_reconnect()
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing relay socket: {e}")

    def _set_connected(self, connected: bool) -> None:
        self._connected = connected
        self._notify(self.on_connection_change, connected)

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect or self._reconnect_handle is not None:
            return
        delay = self.reconnect.delay_for(self._attempt, random.random())
        self._attempt += 1
        logger.info(f"Reconnecting to relay in {delay:.1f}s")
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._should_reconnect and self._task is None:
            self._start()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def _handle_frame(self, raw: Any) -> None:
        try:
            message = parse_server_message(raw)
        except ProtocolError as e:
            logger.warning(f"Failed to parse relay message: {e}")
            return

        if isinstance(message, (AgentStatus, AgentDone, AgentError)):
            if message.session_id != self.session_id:
                logger.debug(f"Ignoring {message.type} for session {message.session_id}")
                return
            if self._health_answered < self._abort_fence:
                # Sent by the broker before it processed our abort
                logger.debug(f"Dropping {message.type} for aborted submission")
                return

        if isinstance(message, HandlersMessage):
            self.agents = list(message.agents)
            self._notify(self.on_handlers, list(message.agents))
        elif isinstance(message, HealthResponse):
            self._health_answered += 1
            self.agents = list(message.agents)
        elif isinstance(message, AgentStatus):
            self._notify(self.on_status, message.message)
        elif isinstance(message, AgentDone):
            if self._finalize(result=message.result):
                self._notify(self.on_done, message.result)
        elif isinstance(message, AgentError):
            if self._finalize(error=message.error):
                self._notify(self.on_error, message.error)

    def _finalize(self, result: Optional[str] = None, error: Optional[str] = None) -> bool:
        """Move the pending entry into history. False if nothing was pending."""
        entry = self.pending
        if entry is None:
            logger.debug("Dropping terminal message with no pending request")
            return False
        self.pending = None
        entry.result = result
        entry.error = error
        self._push_history(entry)
        return True

    def _fail_pending(self, error: str) -> None:
        if self._finalize(error=error):
            self._notify(self.on_error, error)

    def _push_history(self, entry: HistoryEntry) -> None:
        self.history.append(entry)
        if len(self.history) > self.max_history:
            del self.history[:len(self.history) - self.max_history]

    def _notify(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Relay client callback failed")

    async def _send_health(self, ws: Any) -> None:
        self._health_sent += 1
        await ws.send(encode(HealthRequest()))

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    async def send_request(self, agent_id: str, context: AgentContext) -> bool:
        """Send a request to an agent via the relay."""
        entry = HistoryEntry(prompt=context.prompt, content=list(context.content), agent_id=agent_id)
        message = AgentRequest(agent_id=agent_id, session_id=self.session_id, context=context)
        sent = await self._submit(message, entry)
        if sent:
            self._agent_id = agent_id
        return sent

    async def undo(self) -> bool:
        entry = HistoryEntry(prompt="Undo the last change", action="undo", agent_id=self._agent_id)
        return await self._submit(AgentUndo(session_id=self.session_id, agent_id=self._agent_id), entry)

    async def redo(self) -> bool:
        entry = HistoryEntry(prompt="Redo the last undone change", action="redo", agent_id=self._agent_id)
        return await self._submit(AgentRedo(session_id=self.session_id, agent_id=self._agent_id), entry)

    async def resume(self, prompt: str) -> bool:
        entry = HistoryEntry(prompt=prompt, action="resume", agent_id=self._agent_id)
        message = AgentResume(session_id=self.session_id, prompt=prompt, agent_id=self._agent_id)
        return await self._submit(message, entry)

    async def retry(self) -> bool:
        """Resend the last submission as a fresh request.

        Prompt and content come from local history, so retry works even when
        the relay no longer knows this session (e.g. after a restart).
        """
        if not self.connected:
            self._notify(self.on_error, NOT_CONNECTED)
            return False
        if not self.history:
            self._notify(self.on_error, NOTHING_TO_RETRY)
            return False
        last = self.history[-1]
        agent_id = last.agent_id or self._agent_id or (self.agents[0] if self.agents else None)
        if agent_id is None:
            self._notify(self.on_error, NOTHING_TO_RETRY)
            return False
        context = AgentContext(content=tuple(last.content), prompt=last.prompt, selected_count=len(last.content))
        entry = HistoryEntry(prompt=last.prompt, content=list(last.content), action="retry", agent_id=agent_id)
        message = AgentRequest(agent_id=agent_id, session_id=self.session_id, context=context)
        sent = await self._submit(message, entry)
        if sent:
            self._agent_id = agent_id
        return sent

    async def abort(self) -> None:
        """Abort the pending submission. It is recorded as aborted; no callback fires.

        A health request follows the abort. The relay answers frames in order,
        so anything it sent for the aborted submission arrives before that
        request's reply and is dropped.
        """
        entry = self.pending
        if entry is not None:
            self.pending = None
            entry.error = ABORTED
            self._push_history(entry)
        if not self.connected:
            return
        ws = self._ws
        previous = self._abort_fence
        self._abort_fence = self._health_sent + 1
        try:
            await ws.send(encode(AgentAbort(session_id=self.session_id)))
            await self._send_health(ws)
        except Exception as e:
            logger.debug(f"Failed to send abort: {e}")
            if self._health_sent < self._abort_fence:
                self._abort_fence = previous

    async def _submit(self, message: ClientMessage, entry: HistoryEntry) -> bool:
        if not self.connected:
            self._notify(self.on_error, NOT_CONNECTED)
            return False
        if self.pending is not None:
            self._notify(self.on_error, REQUEST_IN_PROGRESS)
            return False

        # Set before sending so a fast answer is still attributed to it
        self.pending = entry
        try:
            await self._ws.send(encode(message))
        except Exception as e:
            if self.pending is entry:
                self.pending = None
            logger.warning(f"Failed to send {message.type}: {e}")
            self._notify(self.on_error, f"Failed to send to relay server: {e}")
            return False
        return True
