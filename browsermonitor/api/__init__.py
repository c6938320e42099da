"""HTTP control surface for a running monitoring session."""

from .routes import get_dispatcher, router
from .server import ControlServer, create_app

__all__ = ["ControlServer", "create_app", "get_dispatcher", "router"]
