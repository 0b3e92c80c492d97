"""API routers for orgvault."""

from orgvault.routers import encryption, health

__all__ = ["encryption", "health"]
