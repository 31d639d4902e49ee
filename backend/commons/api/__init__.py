"""
Commons HTTP API

REST and WebSocket endpoints for agent runs, interactions and shared contexts.
"""

from .server import create_app

__all__ = ["create_app"]
