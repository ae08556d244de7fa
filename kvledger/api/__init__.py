"""
Admin HTTP API for kvledger.

Exposes reconciliation, repair and workflow triggers over FastAPI.
"""

from .app import create_app
from .config import Settings

__all__ = ["create_app", "Settings"]
