from .base import (
    AbuseStore,
    AccessTokenConflict,
    DuplicateEmailConflict,
    RegistrationStore,
    StoreError,
)
from .memory import MemoryAbuseStore, MemoryRegistrationStore
from .sql import SqlAbuseStore, SqlRegistrationStore

__all__ = [
    "AbuseStore",
    "AccessTokenConflict",
    "DuplicateEmailConflict",
    "MemoryAbuseStore",
    "MemoryRegistrationStore",
    "RegistrationStore",
    "SqlAbuseStore",
    "SqlRegistrationStore",
    "StoreError",
]
