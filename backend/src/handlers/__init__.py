"""Lambda handlers for the room chat API."""

from .api_handler import api_handler

__all__ = ["api_handler"]
