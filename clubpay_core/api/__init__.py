"""HTTP API for fee webhooks and subscription enrollment."""

from .app import create_app

__all__ = ["create_app"]
