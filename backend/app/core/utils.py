"""
Core Utilities

Shared helpers used across the application.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    Injected as the clock wherever expiry is computed so tests can fake it.
    """
    return datetime.now(timezone.utc)
