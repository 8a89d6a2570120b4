from .base import Base, metadata
from . import abuse, registrations

__all__ = [
    "Base",
    "metadata",
    "abuse",
    "registrations",
]
