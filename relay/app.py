"""
FastAPI application for the relay: the WebSocket endpoint plus an HTTP health route.
"""

import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import FastAPI, WebSocket

from providers.base import AgentProvider
from relay.broker import RelayBroker
from sessions import SessionStore

logger = logging.getLogger(__name__)


def create_app(providers: Iterable[AgentProvider] = (), store: Optional[SessionStore] = None) -> FastAPI:
    """Build the relay application around a broker for the given providers."""
    broker = RelayBroker(providers, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Registered agents: %s", ", ".join(broker.agent_names) or "none")
        yield
        await broker.shutdown()

    app = FastAPI(title="Inspector Relay", lifespan=lifespan)
    app.state.broker = broker

    @app.get("/health")
    async def health():
        return {"status": "ok", "agents": broker.agent_names}

    @app.websocket("/")
    async def relay_endpoint(ws: WebSocket):
        await broker.handle_connection(ws)

    return app


__all__ = ["create_app"]
