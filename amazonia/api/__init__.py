"""
API routers package
"""
from amazonia.api import (
    system,
    checkin,
    rewards,
    wallet,
    quizzes
)

__all__ = [
    "system",
    "checkin",
    "rewards",
    "wallet",
    "quizzes"
]
