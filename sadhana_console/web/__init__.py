"""Web interface for the Sadhana Console."""

from .server import create_app

__all__ = ["create_app"]
