"""
Base interface for agent providers.
Implement AgentProvider to add support for a different AI agent backend.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from relay.protocol import AgentContext

logger = logging.getLogger(__name__)

UNDO_PROMPT = "Undo the last change you made."
REDO_PROMPT = "Redo the change you just undid."


class ProviderError(Exception):
    """Base error raised by providers."""
    pass


class ProviderUnavailableError(ProviderError):
    """The provider cannot be constructed (missing SDK, credentials, ...)."""
    pass


@dataclass
class ProviderCallbacks:
    """Per-request callbacks, invoked on the event loop thread.

    ``on_status`` may fire any number of times; exactly one of ``on_done`` /
    ``on_error`` ends the request, unless it was aborted.
    """
    on_status: Callable[[str], None]
    on_done: Callable[[str], None]
    on_error: Callable[[str], None]


class AgentProvider(ABC):
    """A pluggable backend that executes an AI coding agent's turn."""

    #: Unique provider name, used as ``agentId`` on the wire
    name: str = ""

    @abstractmethod
    async def handle_request(self, session_id: str, context: AgentContext, callbacks: ProviderCallbacks) -> None:
        """Run one turn. Must eventually call on_done or on_error exactly once."""

    @abstractmethod
    def abort(self, session_id: str) -> None:
        """Cancel in-flight work for a session. Idempotent; never raises."""

    @abstractmethod
    async def undo(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        """Ask the agent to revert its last change."""

    @abstractmethod
    async def redo(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        """Ask the agent to reapply the change it just reverted."""

    @abstractmethod
    async def resume(self, session_id: str, prompt: str, callbacks: ProviderCallbacks) -> None:
        """Continue the session with a new instruction."""


@dataclass
class SessionHistory:
    """Prompts sent and results received for one session, newest last."""
    prompts: List[str] = field(default_factory=list)
    results: List[str] = field(default_factory=list)
    limit: int = 20

    def remember_prompt(self, prompt: str) -> None:
        self.prompts.append(prompt)
        del self.prompts[:-self.limit]

    def remember_result(self, result: str) -> None:
        self.results.append(result)
        del self.results[:-self.limit]

    @property
    def last_prompt(self) -> Optional[str]:
        return self.prompts[-1] if self.prompts else None

    @property
    def last_result(self) -> Optional[str]:
        return self.results[-1] if self.results else None


class RunHandle:
    """One in-flight execution. ``cancelled`` is safe to poll from worker threads."""
    __slots__ = ("session_id", "cancelled", "task", "_on_status")

    def __init__(self, session_id: str, on_status: Callable[[str], None]):
        self.session_id = session_id
        self.cancelled = threading.Event()
        self.task: Optional[asyncio.Task] = None
        self._on_status = on_status

    @property
    def aborted(self) -> bool:
        return self.cancelled.is_set()

    def status(self, message: str) -> None:
        """Report progress; dropped once the run is aborted."""
        if not self.aborted:
            self._on_status(message)

    def cancel(self) -> None:
        self.cancelled.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


def format_error(exc: BaseException) -> str:
    """Format a backend exception for the browser."""
    name = type(exc).__name__
    msg = str(exc).strip()
    if not msg:
        return f"{name} (see relay logs for details)"
    out = f"{name}: {msg}"
    return out[:500] + "..." if len(out) > 500 else out


class ConversationalProvider(AgentProvider):
    """
    Shared request lifecycle for prompt-driven agents.

    Subclasses implement ``_execute``; this class handles prompt assembly,
    per-session memory, abort, timeouts, and the terminal-callback
    guarantees. Undo, redo and resume are synthesized follow-up prompts sent
    through the same path as ``handle_request``.
    """

    context_preamble = "Here is the UI component context from the browser:"

    def __init__(self, timeout: Optional[float] = None, history_limit: int = 20):
        self.timeout = timeout
        self.history_limit = history_limit
        self._active: Dict[str, List[RunHandle]] = {}
        self._history: Dict[str, SessionHistory] = {}

    @abstractmethod
    async def _execute(self, session_id: str, prompt: str, run: RunHandle) -> str:
        """Run the prompt against the backend and return the final result text."""

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def handle_request(self, session_id: str, context: AgentContext, callbacks: ProviderCallbacks) -> None:
        await self._run_prompt(session_id, self.build_prompt(context), callbacks)

    def abort(self, session_id: str) -> None:
        runs = self._active.pop(session_id, [])
        for run in runs:
            run.cancel()
        if runs:
            logger.info(f"[{self.name}] Aborted {len(runs)} run(s) for session {session_id}")

    async def undo(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        history = self._history.get(session_id)
        prompt = UNDO_PROMPT
        if history and history.last_prompt:
            prompt += f"\n\nPrevious prompt was: {history.last_prompt}"
        await self._run_prompt(session_id, prompt, callbacks)

    async def redo(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        await self._run_prompt(session_id, REDO_PROMPT, callbacks)

    async def resume(self, session_id: str, prompt: str, callbacks: ProviderCallbacks) -> None:
        history = self._history.get(session_id)
        if history and history.last_result:
            prompt = f"{prompt}\n\nPrevious interaction result: {history.last_result}"
        await self._run_prompt(session_id, prompt, callbacks)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def build_prompt(self, context: AgentContext) -> str:
        if not context.content:
            return context.prompt
        blocks = "\n\n".join(context.content)
        return f"{self.context_preamble}\n\n{blocks}\n\n{context.prompt}"

    def history(self, session_id: str) -> SessionHistory:
        if session_id not in self._history:
            self._history[session_id] = SessionHistory(limit=self.history_limit)
        return self._history[session_id]

    def is_running(self, session_id: str) -> bool:
        return bool(self._active.get(session_id))

    def _forget_run(self, run: RunHandle) -> None:
        runs = self._active.get(run.session_id)
        if not runs:
            return
        if run in runs:
            runs.remove(run)
        if not runs:
            self._active.pop(run.session_id, None)

    async def _run_prompt(self, session_id: str, prompt: str, callbacks: ProviderCallbacks) -> None:
        run = RunHandle(session_id, callbacks.on_status)
        if self.is_running(session_id):
            logger.warning(f"[{self.name}] Session {session_id} already has a run in flight")
        self._active.setdefault(session_id, []).append(run)
        self.history(session_id).remember_prompt(prompt)

        run.task = asyncio.ensure_future(self._execute(session_id, prompt, run))
        try:
            result = await asyncio.wait_for(run.task, self.timeout)
        except asyncio.CancelledError:
            if run.aborted:
                logger.debug(f"[{self.name}] Run for session {session_id} aborted")
                return
            # The caller itself was cancelled (shutdown); stop the backend too
            run.cancel()
            raise
        except asyncio.TimeoutError:
            if run.aborted:
                return
            run.cancelled.set()
            logger.warning(f"[{self.name}] Session {session_id} timed out after {self.timeout}s")
            callbacks.on_error(f"{self.name} timed out after {self.timeout:g}s")
            return
        except Exception as e:
            if run.aborted:
                return
            logger.exception(f"[{self.name}] Request failed for session {session_id}")
            callbacks.on_error(format_error(e))
            return
        finally:
            self._forget_run(run)

        if run.aborted:
            return
        self.history(session_id).remember_result(result)
        callbacks.on_done(result)
