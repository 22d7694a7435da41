"""Tests for the relay broker."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeWebSocket, ScriptedProvider, wait_until
from providers.base import AgentProvider, ProviderCallbacks
from relay.app import create_app
from relay.broker import RelayBroker, _Outbound
from relay.protocol import AgentStatus


def _request(session_id="s1", agent_id="claude-code", prompt="make it bigger", content=("<button>",)):
    return {
        "type": "agent-request",
        "agentId": agent_id,
        "sessionId": session_id,
        "context": {"content": list(content), "prompt": prompt, "selectedCount": len(content)},
    }


async def _open(broker):
    ws = FakeWebSocket()
    task = asyncio.create_task(broker.handle_connection(ws))
    await wait_until(lambda: ws.sent)
    return ws, task


async def _close(ws, task):
    ws.client_close()
    await asyncio.wait_for(task, 2)


async def _settle():
    """Let spawned provider tasks and the writer run."""
    for _ in range(5):
        await asyncio.sleep(0.01)


class DoubleTerminalProvider(AgentProvider):
    """Breaks the contract by answering twice and chatting afterwards."""
    name = "double"

    async def handle_request(self, session_id: str, context, callbacks: ProviderCallbacks) -> None:
        callbacks.on_done("first")
        callbacks.on_error("second")
        callbacks.on_status("late")

    def abort(self, session_id: str) -> None:
        raise RuntimeError("abort exploded")

    async def undo(self, session_id, callbacks):
        callbacks.on_done("undone")

    async def redo(self, session_id, callbacks):
        callbacks.on_done("redone")

    async def resume(self, session_id, prompt, callbacks):
        callbacks.on_done(prompt)


class TestConnection:

    @pytest.mark.asyncio
    async def test_handlers_announced_first_on_every_connection(self):
        broker = RelayBroker([ScriptedProvider("claude-code"), ScriptedProvider("bedrock")])
        first, t1 = await _open(broker)
        second, t2 = await _open(broker)

        assert first.accepted and second.accepted
        assert first.sent[0] == {"type": "handlers", "agents": ["claude-code", "bedrock"]}
        assert second.sent[0] == {"type": "handlers", "agents": ["claude-code", "bedrock"]}
        await _close(first, t1)
        await _close(second, t2)

    @pytest.mark.asyncio
    async def test_health_reply(self):
        broker = RelayBroker([ScriptedProvider()])
        ws, task = await _open(broker)
        ws.client_send({"type": "health"})
        await wait_until(lambda: len(ws.sent) == 2)
        assert ws.sent[1] == {"type": "health", "status": "ok", "agents": ["claude-code"]}
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped_without_closing(self):
        broker = RelayBroker([ScriptedProvider()])
        ws, task = await _open(broker)
        ws.client_send("not json at all")
        ws.client_send({"type": "unknown-kind"})
        ws.client_send({"type": "agent-request", "sessionId": "s1"})
        ws.client_send({"type": "health"})
        await wait_until(lambda: len(ws.sent) == 2)

        assert ws.types() == ["handlers", "health"]
        assert not task.done()
        await _close(ws, task)

    def test_duplicate_provider_names_rejected(self):
        with pytest.raises(ValueError):
            RelayBroker([ScriptedProvider("a"), ScriptedProvider("a")])


class TestRequests:

    @pytest.mark.asyncio
    async def test_request_streams_status_then_done(self):
        provider = ScriptedProvider(statuses=["Processing..."], result="Done: increased padding")
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send(_request())
        await wait_until(lambda: "agent-done" in ws.types())

        assert ws.sent == [
            {"type": "handlers", "agents": ["claude-code"]},
            {"type": "agent-status", "sessionId": "s1", "message": "Processing..."},
            {"type": "agent-done", "sessionId": "s1", "result": "Done: increased padding"},
        ]
        assert broker.store.get("s1").agent_id == "claude-code"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_unknown_agent_yields_single_error(self):
        provider = ScriptedProvider()
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send(_request(session_id="s2", agent_id="unknown-agent"))
        await wait_until(lambda: len(ws.sent) == 2)
        await _settle()

        assert len(ws.sent) == 2
        error = ws.sent[1]
        assert error["type"] == "agent-error"
        assert error["sessionId"] == "s2"
        assert "unknown-agent" in error["error"]
        assert "claude-code" in error["error"]
        assert provider.calls == []
        assert broker.store.get("s2") is None
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_provider_exception_becomes_agent_error(self):
        broker = RelayBroker([ScriptedProvider(statuses=[], exc=RuntimeError("boom"))])
        ws, task = await _open(broker)

        ws.client_send(_request())
        await wait_until(lambda: "agent-error" in ws.types())
        await _settle()

        assert ws.types() == ["handlers", "agent-error"]
        assert ws.sent[1]["error"] == "RuntimeError: boom"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_provider_returning_without_answer_yields_error(self):
        broker = RelayBroker([ScriptedProvider(statuses=[], silent=True)])
        ws, task = await _open(broker)

        ws.client_send(_request())
        await wait_until(lambda: "agent-error" in ws.types())
        assert ws.sent[1]["error"] == "Agent finished without a result"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_at_most_one_terminal_message(self):
        broker = RelayBroker([DoubleTerminalProvider()])
        ws, task = await _open(broker)

        ws.client_send(_request(agent_id="double"))
        await wait_until(lambda: "agent-done" in ws.types())
        await _settle()

        assert ws.types() == ["handlers", "agent-done"]
        assert ws.sent[1]["result"] == "first"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_slow_provider_does_not_block_dispatch(self):
        provider = ScriptedProvider(statuses=[], hang=True)
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send(_request())
        ws.client_send({"type": "health"})
        await wait_until(lambda: "health" in ws.types())
        assert provider.calls and "agent-done" not in ws.types()
        await _close(ws, task)
        await broker.shutdown()


class TestRetry:

    @pytest.mark.asyncio
    async def test_retry_reuses_agent_and_context(self):
        claude = ScriptedProvider("claude-code")
        bedrock = ScriptedProvider("bedrock")
        broker = RelayBroker([claude, bedrock])
        ws, task = await _open(broker)

        ws.client_send(_request(agent_id="bedrock", prompt="shrink it"))
        await wait_until(lambda: ws.types().count("agent-done") == 1)
        ws.client_send({"type": "agent-retry", "sessionId": "s1"})
        await wait_until(lambda: ws.types().count("agent-done") == 2)

        assert claude.calls == []
        assert [c[0] for c in bedrock.calls] == ["handle_request", "handle_request"]
        assert bedrock.calls[0][2] == bedrock.calls[1][2]
        assert bedrock.calls[1][2].prompt == "shrink it"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_retry_unknown_session_is_an_error(self):
        provider = ScriptedProvider()
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send({"type": "agent-retry", "sessionId": "never-seen"})
        await wait_until(lambda: len(ws.sent) == 2)
        await _settle()

        assert ws.sent[1]["type"] == "agent-error"
        assert "never-seen" in ws.sent[1]["error"]
        assert provider.calls == []
        await _close(ws, task)


class TestFollowUps:

    @pytest.mark.asyncio
    async def test_undo_routes_to_session_owner(self):
        claude = ScriptedProvider("claude-code")
        bedrock = ScriptedProvider("bedrock")
        broker = RelayBroker([claude, bedrock])
        ws, task = await _open(broker)

        ws.client_send(_request(agent_id="bedrock"))
        await wait_until(lambda: ws.types().count("agent-done") == 1)
        # The session's recorded agent wins over the hint
        ws.client_send({"type": "agent-undo", "sessionId": "s1", "agentId": "claude-code"})
        await wait_until(lambda: ws.types().count("agent-done") == 2)

        assert [c[0] for c in bedrock.calls] == ["handle_request", "undo"]
        assert claude.calls == []
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_unknown_session_uses_explicit_agent(self):
        claude = ScriptedProvider("claude-code")
        bedrock = ScriptedProvider("bedrock")
        broker = RelayBroker([claude, bedrock])
        ws, task = await _open(broker)

        ws.client_send({"type": "agent-resume", "sessionId": "new", "prompt": "continue", "agentId": "bedrock"})
        await wait_until(lambda: "agent-done" in ws.types())
        assert bedrock.calls == [("resume", "new", "continue")]
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_unknown_session_falls_back_to_first_provider(self):
        claude = ScriptedProvider("claude-code")
        bedrock = ScriptedProvider("bedrock")
        broker = RelayBroker([claude, bedrock])
        ws, task = await _open(broker)

        ws.client_send({"type": "agent-redo", "sessionId": "new"})
        await wait_until(lambda: "agent-done" in ws.types())
        assert claude.calls == [("redo", "new", None)]
        assert bedrock.calls == []
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_unknown_explicit_agent_is_an_error(self):
        provider = ScriptedProvider()
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send({"type": "agent-undo", "sessionId": "new", "agentId": "ghost"})
        await wait_until(lambda: len(ws.sent) == 2)
        assert ws.sent[1]["type"] == "agent-error"
        assert "ghost" in ws.sent[1]["error"]
        assert provider.calls == []
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_follow_up_without_providers_is_an_error(self):
        broker = RelayBroker([])
        ws, task = await _open(broker)

        ws.client_send({"type": "agent-undo", "sessionId": "s"})
        await wait_until(lambda: len(ws.sent) == 2)
        assert ws.sent[0] == {"type": "handlers", "agents": []}
        assert ws.sent[1] == {"type": "agent-error", "sessionId": "s", "error": "No agents registered with the relay"}
        await _close(ws, task)


class TestAbort:

    @pytest.mark.asyncio
    async def test_abort_silences_in_flight_request(self):
        provider = ScriptedProvider(statuses=["working"], hang=True)
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send(_request())
        await wait_until(lambda: "agent-status" in ws.types())
        ws.client_send({"type": "agent-abort", "sessionId": "s1"})
        await wait_until(lambda: provider.aborted == ["s1"])
        await _settle()
        ws.client_send({"type": "health"})
        await wait_until(lambda: "health" in ws.types())

        assert ws.types() == ["handlers", "agent-status", "health"]
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_abort_drops_answers_from_providers_that_ignore_it(self):
        provider = ScriptedProvider(statuses=[], hang=True, ignore_abort=True, result="too late")
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send(_request())
        await wait_until(lambda: provider.calls)
        ws.client_send({"type": "agent-abort", "sessionId": "s1"})
        await wait_until(lambda: provider.aborted)
        await _settle()

        assert "agent-done" not in ws.types()
        assert "agent-error" not in ws.types()
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_abort_targets_owner_of_known_session(self):
        claude = ScriptedProvider("claude-code")
        bedrock = ScriptedProvider("bedrock")
        broker = RelayBroker([claude, bedrock])
        ws, task = await _open(broker)

        ws.client_send(_request(agent_id="bedrock"))
        await wait_until(lambda: "agent-done" in ws.types())
        ws.client_send({"type": "agent-abort", "sessionId": "s1"})
        ws.client_send({"type": "agent-abort", "sessionId": "unknown"})
        await wait_until(lambda: "unknown" in claude.aborted)

        assert bedrock.aborted == ["s1", "unknown"]
        assert claude.aborted == ["unknown"]
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_abort_survives_provider_exceptions(self):
        broker = RelayBroker([DoubleTerminalProvider()])
        ws, task = await _open(broker)

        ws.client_send({"type": "agent-abort", "sessionId": "s1"})
        ws.client_send({"type": "health"})
        await wait_until(lambda: "health" in ws.types())
        assert not task.done()
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_a_new_request_after_abort_is_answered(self):
        provider = ScriptedProvider(statuses=[], hang=True)
        broker = RelayBroker([provider])
        ws, task = await _open(broker)

        ws.client_send(_request())
        await wait_until(lambda: provider.calls)
        ws.client_send({"type": "agent-abort", "sessionId": "s1"})
        await wait_until(lambda: provider.aborted)

        provider.hang = False
        ws.client_send(_request(prompt="again"))
        await wait_until(lambda: "agent-done" in ws.types())
        assert ws.types().count("agent-done") == 1
        await _close(ws, task)


class TestOutbound:

    @pytest.mark.asyncio
    async def test_send_failure_closes_channel(self):
        class BrokenSocket:
            def __init__(self):
                self.attempts = 0

            async def send_text(self, data):
                self.attempts += 1
                raise RuntimeError("socket gone")

        sock = BrokenSocket()
        channel = _Outbound(sock)
        channel.start()
        channel.send(AgentStatus(session_id="s", message="one"))
        await wait_until(lambda: channel.closed)
        channel.send(AgentStatus(session_id="s", message="two"))
        await _settle()

        assert sock.attempts == 1
        await channel.close()


class TestApp:
    """End-to-end through FastAPI's TestClient."""

    def test_websocket_round_trip(self):
        app = create_app([ScriptedProvider(statuses=["Processing..."], result="Done: increased padding")])
        with TestClient(app) as client:
            with client.websocket_connect("/") as ws:
                assert ws.receive_json() == {"type": "handlers", "agents": ["claude-code"]}
                ws.send_json(_request())
                assert ws.receive_json() == {"type": "agent-status", "sessionId": "s1", "message": "Processing..."}
                assert ws.receive_json() == {"type": "agent-done", "sessionId": "s1", "result": "Done: increased padding"}

    def test_unknown_agent_over_websocket(self):
        app = create_app([ScriptedProvider()])
        with TestClient(app) as client:
            with client.websocket_connect("/") as ws:
                ws.receive_json()
                ws.send_json(_request(session_id="s2", agent_id="unknown-agent"))
                error = ws.receive_json()
                assert error["type"] == "agent-error"
                assert "unknown-agent" in error["error"] and "claude-code" in error["error"]
                ws.send_json({"type": "health"})
                assert ws.receive_json()["type"] == "health"

    def test_http_health(self):
        app = create_app([ScriptedProvider("claude-code"), ScriptedProvider("bedrock")])
        with TestClient(app) as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "agents": ["claude-code", "bedrock"]}
