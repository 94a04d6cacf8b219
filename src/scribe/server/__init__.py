"""Scribe HTTP server."""

from scribe.server.app import create_app

__all__ = ["create_app"]
