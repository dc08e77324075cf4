"""HTTP, SSE and WebSocket transports."""
