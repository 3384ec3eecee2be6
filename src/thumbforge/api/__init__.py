"""HTTP and WebSocket adapter."""
