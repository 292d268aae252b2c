"""API package exports."""
from . import routes_admin, routes_realtime, routes_rest

__all__ = [
    "routes_admin",
    "routes_realtime",
    "routes_rest",
]
