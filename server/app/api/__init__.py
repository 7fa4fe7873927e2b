"""API module.

REST API routes and utilities.
"""

from server.app.api.routes import chat, models, preferences, usage

__all__ = ["chat", "models", "preferences", "usage"]
