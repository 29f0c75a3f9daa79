"""API routers package."""

from bankrec.routers import reconciliation

__all__ = ["reconciliation"]
