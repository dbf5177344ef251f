"""BeOut database models."""

from beout.models.user import User, UserProfile

__all__ = [
    "User",
    "UserProfile",
]
