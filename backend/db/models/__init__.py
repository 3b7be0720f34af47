"""Database models for the speed monitor.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.user import User
from db.models.api_key import APIKey
from db.models.speedtest_result import SpeedtestResult

__all__ = [
    "User",
    "APIKey",
    "SpeedtestResult",
]
