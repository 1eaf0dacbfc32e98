"""
HTTP gateway for the RecSync engine.

Exposes per-actor editing sessions over a FastAPI app.
"""

from .app import create_app
from .settings import GatewaySettings

__all__ = ["GatewaySettings", "create_app"]
