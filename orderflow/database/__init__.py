"""
Database package initialization.

Provides the SQLAlchemy declarative base, async connection management and the
order aggregate table. Import submodules explicitly when needed.
"""

__all__ = []
