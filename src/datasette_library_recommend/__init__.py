"""Datasette plugin serving streamed AI reading recommendations from a media catalog."""

from datasette_library_recommend.plugin import (
    register_routes,
    skip_csrf,
    startup,
)

__all__ = [
    "register_routes",
    "skip_csrf",
    "startup",
]
