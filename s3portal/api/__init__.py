"""
HTTP API for the portal.
"""

from .app import create_app
from .client import PortalClient, PortalClientError

__all__ = [
    "create_app",
    "PortalClient",
    "PortalClientError",
]
