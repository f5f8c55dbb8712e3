"""Web interface for reviewing lecture drafts."""

from .server import create_app

__all__ = ["create_app"]
