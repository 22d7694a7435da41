"""
Relay broker: bridges browser WebSocket clients to agent providers.

One dispatch loop per connection. Request-shaped messages run as independent
asyncio tasks so a slow provider never blocks the receive loop; provider
callbacks are turned into protocol frames and written back to the socket
that asked, in order, for as long as it stays open.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from providers.base import AgentProvider, ProviderCallbacks, format_error
from relay.protocol import (
    AgentAbort,
    AgentDone,
    AgentError,
    AgentRedo,
    AgentRequest,
    AgentResume,
    AgentRetry,
    AgentStatus,
    AgentUndo,
    ClientMessage,
    HandlersMessage,
    HealthRequest,
    HealthResponse,
    ProtocolError,
    ServerMessage,
    encode,
    parse_client_message,
)
from sessions import SessionStore

logger = logging.getLogger(__name__)


# ============================================================
# Outbound channel (one per socket)
# ============================================================

class _Outbound:
    """Ordered send queue for one WebSocket that silently drops sends once closed.

    All provider callbacks enqueue here instead of touching the socket. A
    single writer task drains the queue so frames leave in the order they
    were produced. The first send failure marks the channel closed; later
    frames are dropped, never retried.
    """

    def __init__(self, ws: WebSocket):
        self.ws = ws
        self.closed = False
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._writer = asyncio.ensure_future(self._drain())

    def send(self, message: ServerMessage) -> None:
        if self.closed:
            return
        self._queue.put_nowait(encode(message))

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.ws.send_text(frame)
            except Exception as e:
                logger.debug(f"Send failed, dropping further frames: {e}")
                self.closed = True          # mark disconnected on first failure
                return

    async def close(self) -> None:
        self.closed = True
        if self._writer and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass


# ============================================================
# Invocation (one per provider call)
# ============================================================

class _Invocation:
    """Turns provider callbacks into protocol frames for one request.

    Enforces at most one terminal frame, nothing after it, and nothing at
    all once the session is aborted.
    """
    __slots__ = ("session_id", "channel", "silenced", "finished")

    def __init__(self, session_id: str, channel: _Outbound):
        self.session_id = session_id
        self.channel = channel
        self.silenced = False
        self.finished = False

    def callbacks(self) -> ProviderCallbacks:
        return ProviderCallbacks(on_status=self.status, on_done=self.done, on_error=self.error)

    @property
    def open(self) -> bool:
        return not (self.silenced or self.finished)

    def status(self, message: str) -> None:
        if self.open:
            self.channel.send(AgentStatus(session_id=self.session_id, message=message))

    def done(self, result: str) -> None:
        if not self.open:
            logger.debug(f"Dropping late agent-done for session {self.session_id}")
            return
        self.finished = True
        self.channel.send(AgentDone(session_id=self.session_id, result=result))

    def error(self, error: str) -> None:
        if not self.open:
            logger.debug(f"Dropping late agent-error for session {self.session_id}")
            return
        self.finished = True
        self.channel.send(AgentError(session_id=self.session_id, error=error))


ProviderCall = Callable[[ProviderCallbacks], Awaitable[None]]


# ============================================================
# Broker
# ============================================================

class RelayBroker:
    """Routes client messages to providers via the session store."""

    def __init__(self, providers: Iterable[AgentProvider], store: Optional[SessionStore] = None):
        self._providers: Dict[str, AgentProvider] = {}
        for provider in providers:
            if not provider.name:
                raise ValueError(f"Provider {provider!r} has no name")
            if provider.name in self._providers:
                raise ValueError(f"Duplicate provider name: {provider.name}")
            self._providers[provider.name] = provider
        self.store = store if store is not None else SessionStore()
        self._inflight: Dict[str, Set[_Invocation]] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def agent_names(self) -> List[str]:
        return list(self._providers)

    def provider(self, name: str) -> Optional[AgentProvider]:
        return self._providers.get(name)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_connection(self, ws: WebSocket) -> None:
        """Serve one client until it disconnects."""
        await ws.accept()
        channel = _Outbound(ws)
        channel.start()
        logger.info("Client connected")

        # Announce available handlers before anything else
        channel.send(HandlersMessage(agents=self.agent_names))

        try:
            while True:
                event = await ws.receive()
                if event["type"] == "websocket.disconnect":
                    break
                raw = event.get("text")
                if raw is None:
                    raw = event.get("bytes")
                try:
                    message = parse_client_message(raw)
                except ProtocolError as e:
                    logger.debug(f"Dropping malformed frame: {e}")
                    continue
                self.dispatch(message, channel)
        except WebSocketDisconnect:
            pass
        finally:
            await channel.close()
            logger.info("Client disconnected")

    async def shutdown(self) -> None:
        """Abort all in-flight work and wait for provider tasks to unwind."""
        for session_id in list(self._inflight):
            self._abort(session_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, message: ClientMessage, channel: _Outbound) -> None:
        """Handle one decoded client message. Never blocks on a provider."""
        if isinstance(message, HealthRequest):
            channel.send(HealthResponse(agents=self.agent_names))

        elif isinstance(message, AgentRequest):
            provider = self._providers.get(message.agent_id)
            if provider is None:
                channel.send(AgentError(
                    session_id=message.session_id,
                    error=f"Unknown agent: {message.agent_id}. Available: {', '.join(self.agent_names)}",
                ))
                return
            self.store.put(message.session_id, provider.name, message.context)
            context = message.context
            self._spawn(message.session_id, channel, provider,
                        lambda cb: provider.handle_request(message.session_id, context, cb))

        elif isinstance(message, AgentRetry):
            session = self.store.get(message.session_id)
            provider = self._providers.get(session.agent_id) if session else None
            if session is None or provider is None:
                channel.send(AgentError(
                    session_id=message.session_id,
                    error=f"No previous request to retry for session {message.session_id}",
                ))
                return
            self._spawn(message.session_id, channel, provider,
                        lambda cb: provider.handle_request(message.session_id, session.last_context, cb))

        elif isinstance(message, (AgentUndo, AgentRedo, AgentResume)):
            provider, error = self._resolve_follow_up(message.session_id, message.agent_id)
            if provider is None:
                channel.send(AgentError(session_id=message.session_id, error=error))
                return
            if isinstance(message, AgentUndo):
                call: ProviderCall = lambda cb: provider.undo(message.session_id, cb)
            elif isinstance(message, AgentRedo):
                call = lambda cb: provider.redo(message.session_id, cb)
            else:
                call = lambda cb: provider.resume(message.session_id, message.prompt, cb)
            self._spawn(message.session_id, channel, provider, call)

        elif isinstance(message, AgentAbort):
            self._abort(message.session_id)

        else:
            logger.warning(f"Unhandled client message: {message!r}")

    def _resolve_follow_up(self, session_id: str, agent_id: Optional[str]) -> Tuple[Optional[AgentProvider], str]:
        """Pick the provider for undo/redo/resume.

        Order: the session's recorded agent, then an explicit agentId, then
        the first registered provider.
        """
        session = self.store.get(session_id)
        if session and session.agent_id in self._providers:
            return self._providers[session.agent_id], ""
        if agent_id:
            provider = self._providers.get(agent_id)
            if provider is None:
                return None, f"Unknown agent: {agent_id}. Available: {', '.join(self.agent_names)}"
            return provider, ""
        if not self._providers:
            return None, "No agents registered with the relay"
        return next(iter(self._providers.values())), ""

    def _abort(self, session_id: str) -> None:
        for invocation in self._inflight.get(session_id, ()):
            invocation.silenced = True

        session = self.store.get(session_id)
        if session and session.agent_id in self._providers:
            targets = [self._providers[session.agent_id]]
        else:
            targets = list(self._providers.values())
        for provider in targets:
            try:
                provider.abort(session_id)
            except Exception:
                logger.exception(f"Provider {provider.name} failed to abort session {session_id}")

    def _spawn(self, session_id: str, channel: _Outbound, provider: AgentProvider, call: ProviderCall) -> None:
        invocation = _Invocation(session_id, channel)
        self._inflight.setdefault(session_id, set()).add(invocation)
        task = asyncio.ensure_future(self._run(invocation, provider, call))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, invocation: _Invocation, provider: AgentProvider, call: ProviderCall) -> None:
        try:
            await call(invocation.callbacks())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Provider {provider.name} raised for session {invocation.session_id}")
            invocation.error(format_error(e))
        else:
            if invocation.open:
                logger.warning(f"Provider {provider.name} returned without a result for session {invocation.session_id}")
                invocation.error("Agent finished without a result")
        finally:
            pending = self._inflight.get(invocation.session_id)
            if pending is not None:
                pending.discard(invocation)
                if not pending:
                    self._inflight.pop(invocation.session_id, None)
