"""Web application entry point for Gmail Mirror."""

from .app import create_app

__all__ = ["create_app"]
