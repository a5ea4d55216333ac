"""HTTP API for deductsync nodes.

Exposes deduction CRUD, local-to-remote reconciliation, health, and the
offline asset worker over FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
