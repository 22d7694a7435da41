"""
Inspector Relay WebSocket server.

- protocol: wire message types shared by the broker and the client
- broker: per-connection dispatch to agent providers
- app: FastAPI application factory
- cli: start command (python -m relay)
"""
