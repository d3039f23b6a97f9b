"""Database models."""
from app.models.api_key import ApiKey

__all__ = [
    "ApiKey",
]
