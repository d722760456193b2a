"""Route modules exposed by the API package."""

from . import auth, history, ping, tickets, users

__all__ = ["auth", "history", "ping", "tickets", "users"]
