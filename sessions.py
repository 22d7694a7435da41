"""
In-memory session store for the relay broker.

Maps a client-generated session id to the agent that owns it and the last
request context submitted for it. Used to service retry and to route
undo/redo/resume to the right provider. Lives only as long as the broker
process; there is no expiry.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from relay.protocol import AgentContext

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Session:
    """The last accepted request for one session."""
    session_id: str
    agent_id: str
    last_context: AgentContext
    created_at: str = ""
    updated_at: str = ""


class SessionStore:
    """
    Thread-safe map of session id -> Session.

    A session exists once at least one ``agent-request`` was accepted for it.
    ``put`` is the only writer; ``get`` returns a snapshot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def put(self, session_id: str, agent_id: str, context: AgentContext) -> Session:
        """Record (or overwrite) the last request for a session."""
        now = _now_iso()
        with self._lock:
            existing = self._sessions.get(session_id)
            session = Session(
                session_id=session_id,
                agent_id=agent_id,
                last_context=context,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._sessions[session_id] = session
        if existing and existing.agent_id != agent_id:
            logger.info(f"Session {session_id} moved from agent {existing.agent_id} to {agent_id}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Look up a session. Returns None if no request was ever accepted for it."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            # Session fields are immutable values; a shallow copy is a safe snapshot
            return Session(
                session_id=session.session_id,
                agent_id=session.agent_id,
                last_context=session.last_context,
                created_at=session.created_at,
                updated_at=session.updated_at,
            )

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
