"""
Storage layer for proctoring records
"""

from .repository import IntegrityRepository, InMemoryIntegrityRepository
from .retry import call_with_retry
from .sql_repository import SqlIntegrityRepository

__all__ = [
    "IntegrityRepository",
    "InMemoryIntegrityRepository",
    "SqlIntegrityRepository",
    "call_with_retry",
]
