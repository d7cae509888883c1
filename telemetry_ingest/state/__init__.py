from .guarded import GuardedStateRepository
from .memory_repository import InMemoryStateRepository
from .repository import StateRepository
from .sql_repository import SqlStateRepository, create_schema
from .store import ApplyResult, MachineStateStore, NotFound, Stale, UpdatedSnapshot

__all__ = [
    "ApplyResult",
    "GuardedStateRepository",
    "InMemoryStateRepository",
    "MachineStateStore",
    "NotFound",
    "SqlStateRepository",
    "Stale",
    "StateRepository",
    "UpdatedSnapshot",
    "create_schema",
]
