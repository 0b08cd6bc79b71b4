"""
API Routers package
"""
from gatewise.api import system, sessions, checkins, gates, merges

__all__ = [
    "system",
    "sessions",
    "checkins",
    "gates",
    "merges",
]
