"""Web interface: HTTP API and WebSocket push channels."""
