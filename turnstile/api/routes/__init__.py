"""Route modules exposed by the API package."""

from . import metrics, ping, scanner, tickets

__all__ = ["metrics", "ping", "scanner", "tickets"]
