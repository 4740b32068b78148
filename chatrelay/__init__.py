"""Multi-room WebSocket chat relay."""

__version__ = "0.3.0"
