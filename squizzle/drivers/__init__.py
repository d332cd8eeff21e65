"""
Database drivers.

``InMemoryDriver`` records statements in process; ``PostgresDriver`` runs
them on PostgreSQL through asyncpg.
"""

from .memory import InMemoryDriver
from .postgres import PostgresDriver

__all__ = [
    "InMemoryDriver",
    "PostgresDriver",
]
