"""API Routes Package."""

from api.routes import health, billing

__all__ = [
    "health",
    "billing",
]
