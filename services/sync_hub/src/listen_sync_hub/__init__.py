"""Relay hub bridging listen sync sessions to WebSocket clients."""
