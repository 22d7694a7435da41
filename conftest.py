"""Shared fakes for relay tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from providers.base import AgentProvider, ProviderCallbacks
from relay.protocol import AgentContext


class ScriptedProvider(AgentProvider):
    """Provider whose behavior is scripted per test.

    Every invocation emits ``statuses``, then (unless told otherwise) ends
    with ``on_done(result)`` or ``on_error(error)``. With ``hang=True`` it
    waits until aborted; with ``ignore_abort=True`` it still answers after
    the abort, like a misbehaving backend.
    """

    def __init__(
        self,
        name: str = "claude-code",
        statuses: Sequence[str] = ("Processing...",),
        result: str = "Done",
        error: Optional[str] = None,
        exc: Optional[Exception] = None,
        hang: bool = False,
        ignore_abort: bool = False,
        silent: bool = False,
    ):
        self.name = name
        self.statuses = list(statuses)
        self.result = result
        self.error = error
        self.exc = exc
        self.hang = hang
        self.ignore_abort = ignore_abort
        self.silent = silent
        self.calls: List[Tuple[str, str, Any]] = []
        self.aborted: List[str] = []
        self._gates: Dict[str, asyncio.Event] = {}

    async def handle_request(self, session_id: str, context: AgentContext, callbacks: ProviderCallbacks) -> None:
        self.calls.append(("handle_request", session_id, context))
        await self._play(session_id, callbacks)

    async def undo(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        self.calls.append(("undo", session_id, None))
        await self._play(session_id, callbacks)

    async def redo(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        self.calls.append(("redo", session_id, None))
        await self._play(session_id, callbacks)

    async def resume(self, session_id: str, prompt: str, callbacks: ProviderCallbacks) -> None:
        self.calls.append(("resume", session_id, prompt))
        await self._play(session_id, callbacks)

    def abort(self, session_id: str) -> None:
        self.aborted.append(session_id)
        gate = self._gates.pop(session_id, None)
        if gate is not None:
            gate.set()

    async def _play(self, session_id: str, callbacks: ProviderCallbacks) -> None:
        for status in self.statuses:
            callbacks.on_status(status)
        if self.exc is not None:
            raise self.exc
        if self.silent:
            return
        if self.hang:
            gate = asyncio.Event()
            self._gates[session_id] = gate
            await gate.wait()
            if not self.ignore_abort:
                return
        if self.error is not None:
            callbacks.on_error(self.error)
        else:
            callbacks.on_done(self.result)


class FakeWebSocket:
    """Server-side stand-in for a Starlette WebSocket."""

    def __init__(self):
        self.accepted = False
        self.sent: List[Dict[str, Any]] = []
        self._incoming: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def receive(self) -> Dict[str, Any]:
        return await self._incoming.get()

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def client_send(self, message: Any) -> None:
        text = message if isinstance(message, str) else json.dumps(message)
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def client_close(self) -> None:
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def types(self) -> List[str]:
        return [m["type"] for m in self.sent]


class FakeClientSocket:
    """Client-side stand-in for a websockets ClientConnection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._incoming: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def push(self, message: Any) -> None:
        """Deliver a frame from the server."""
        text = message if isinstance(message, str) else json.dumps(message)
        self._incoming.put_nowait(text)

    def drop(self) -> None:
        """Simulate the server going away."""
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Connect factory handing out FakeClientSockets; can refuse the first N attempts."""

    def __init__(self, refuse: int = 0):
        self.refuse = refuse
        self.calls = 0
        self.sockets: List[FakeClientSocket] = []

    async def __call__(self, url: str) -> FakeClientSocket:
        self.calls += 1
        if self.refuse > 0:
            self.refuse -= 1
            raise OSError("Connection refused")
        ws = FakeClientSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeClientSocket:
        return self.sockets[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def context():
    return AgentContext(content=("<button>",), prompt="make it bigger", selected_count=1)
