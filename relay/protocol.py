"""
WebSocket relay protocol message types.
Shared between the broker and the client.

Wire frames are JSON objects discriminated by ``type``. Field names are
camelCase on the wire and snake_case on the dataclasses.
"""

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Union


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into a known message."""
    pass


@dataclass(frozen=True)
class AgentContext:
    """UI context captured in the browser. Opaque to the relay."""
    content: Tuple[str, ...] = ()
    prompt: str = ""
    selected_count: int = 0

    def __post_init__(self):
        # Accept any sequence but store an immutable tuple
        object.__setattr__(self, "content", tuple(self.content))
        if self.selected_count < 0:
            raise ValueError("selected_count must be >= 0")

    @classmethod
    def create(cls, content: Sequence[str] = (), prompt: str = "", selected_count: int = 0) -> "AgentContext":
        return cls(content=tuple(content), prompt=prompt, selected_count=selected_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": list(self.content),
            "prompt": self.prompt,
            "selectedCount": self.selected_count,
        }


# ============================================================
# Client -> Server
# ============================================================

@dataclass
class HealthRequest:
    type: ClassVar[str] = "health"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type}


@dataclass
class AgentRequest:
    agent_id: str
    session_id: str
    context: AgentContext
    type: ClassVar[str] = "agent-request"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "agentId": self.agent_id,
            "sessionId": self.session_id,
            "context": self.context.to_dict(),
        }


@dataclass
class AgentAbort:
    session_id: str
    type: ClassVar[str] = "agent-abort"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id}


@dataclass
class AgentUndo:
    session_id: str
    agent_id: Optional[str] = None
    type: ClassVar[str] = "agent-undo"

    def to_dict(self) -> Dict[str, Any]:
        return _with_agent({"type": self.type, "sessionId": self.session_id}, self.agent_id)


@dataclass
class AgentRedo:
    session_id: str
    agent_id: Optional[str] = None
    type: ClassVar[str] = "agent-redo"

    def to_dict(self) -> Dict[str, Any]:
        return _with_agent({"type": self.type, "sessionId": self.session_id}, self.agent_id)


@dataclass
class AgentResume:
    session_id: str
    prompt: str
    agent_id: Optional[str] = None
    type: ClassVar[str] = "agent-resume"

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type, "sessionId": self.session_id, "prompt": self.prompt}
        return _with_agent(data, self.agent_id)


@dataclass
class AgentRetry:
    session_id: str
    type: ClassVar[str] = "agent-retry"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id}


ClientMessage = Union[
    HealthRequest, AgentRequest, AgentAbort, AgentUndo, AgentRedo, AgentResume, AgentRetry
]


# ============================================================
# Server -> Client
# ============================================================

@dataclass
class HandlersMessage:
    agents: List[str] = field(default_factory=list)
    type: ClassVar[str] = "handlers"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "agents": list(self.agents)}


@dataclass
class HealthResponse:
    agents: List[str] = field(default_factory=list)
    status: str = "ok"
    type: ClassVar[str] = "health"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "status": self.status, "agents": list(self.agents)}


@dataclass
class AgentStatus:
    session_id: str
    message: str
    type: ClassVar[str] = "agent-status"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "message": self.message}


@dataclass
class AgentDone:
    session_id: str
    result: str
    type: ClassVar[str] = "agent-done"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "result": self.result}


@dataclass
class AgentError:
    session_id: str
    error: str
    type: ClassVar[str] = "agent-error"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sessionId": self.session_id, "error": self.error}


ServerMessage = Union[HandlersMessage, HealthResponse, AgentStatus, AgentDone, AgentError]


# ============================================================
# Encoding / decoding
# ============================================================

def encode(message: Union[ClientMessage, ServerMessage]) -> str:
    """Serialize a message to a JSON text frame."""
    return json.dumps(message.to_dict(), ensure_ascii=False)


def _with_agent(data: Dict[str, Any], agent_id: Optional[str]) -> Dict[str, Any]:
    if agent_id:
        data["agentId"] = agent_id
    return data


def _load_object(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}")
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")
    return data


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"'{data.get('type')}' requires string field '{key}'")
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"'{data.get('type')}' field '{key}' must be a string")
    return value


def _require_str_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ProtocolError(f"'{data.get('type')}' requires string list field '{key}'")
    return list(value)


def _parse_context(value: Any) -> AgentContext:
    if not isinstance(value, dict):
        raise ProtocolError("'agent-request' requires object field 'context'")
    content = value.get("content", [])
    if not isinstance(content, list) or not all(isinstance(c, str) for c in content):
        raise ProtocolError("context.content must be a list of strings")
    prompt = value.get("prompt", "")
    if not isinstance(prompt, str):
        raise ProtocolError("context.prompt must be a string")
    selected = value.get("selectedCount", 0)
    # bool is an int subclass; reject it explicitly
    if isinstance(selected, bool) or not isinstance(selected, int) or selected < 0:
        raise ProtocolError("context.selectedCount must be a non-negative integer")
    return AgentContext(content=tuple(content), prompt=prompt, selected_count=selected)


def parse_client_message(raw: Union[str, bytes, Dict[str, Any]]) -> ClientMessage:
    """Decode a client -> server frame. Raises ProtocolError on anything unexpected."""
    data = _load_object(raw)
    msg_type = data.get("type")

    if msg_type == HealthRequest.type:
        return HealthRequest()
    if msg_type == AgentRequest.type:
        return AgentRequest(
            agent_id=_require_str(data, "agentId"),
            session_id=_require_str(data, "sessionId"),
            context=_parse_context(data.get("context")),
        )
    if msg_type == AgentAbort.type:
        return AgentAbort(session_id=_require_str(data, "sessionId"))
    if msg_type == AgentUndo.type:
        return AgentUndo(session_id=_require_str(data, "sessionId"), agent_id=_optional_str(data, "agentId"))
    if msg_type == AgentRedo.type:
        return AgentRedo(session_id=_require_str(data, "sessionId"), agent_id=_optional_str(data, "agentId"))
    if msg_type == AgentResume.type:
        return AgentResume(
            session_id=_require_str(data, "sessionId"),
            prompt=_require_str(data, "prompt"),
            agent_id=_optional_str(data, "agentId"),
        )
    if msg_type == AgentRetry.type:
        return AgentRetry(session_id=_require_str(data, "sessionId"))
    raise ProtocolError(f"Unknown client message type: {msg_type!r}")


def parse_server_message(raw: Union[str, bytes, Dict[str, Any]]) -> ServerMessage:
    """Decode a server -> client frame. Raises ProtocolError on anything unexpected."""
    data = _load_object(raw)
    msg_type = data.get("type")

    if msg_type == HandlersMessage.type:
        return HandlersMessage(agents=_require_str_list(data, "agents"))
    if msg_type == HealthResponse.type:
        return HealthResponse(agents=_require_str_list(data, "agents"), status=_require_str(data, "status"))
    if msg_type == AgentStatus.type:
        return AgentStatus(session_id=_require_str(data, "sessionId"), message=_require_str(data, "message"))
    if msg_type == AgentDone.type:
        return AgentDone(session_id=_require_str(data, "sessionId"), result=_require_str(data, "result"))
    if msg_type == AgentError.type:
        return AgentError(session_id=_require_str(data, "sessionId"), error=_require_str(data, "error"))
    raise ProtocolError(f"Unknown server message type: {msg_type!r}")
