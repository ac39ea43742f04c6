"""
Copy Engine
Mapping resolution, scheduling, resumable reads and per-collection copy
"""

from .cursor import SafeCursor
from .engine import CollectionCopyEngine, MigrationEngine, create_migration_engine
from .indexes import IndexSpec, IndexTranslator
from .resolver import Resolver
from .scheduler import TaskScheduler

__all__ = [
    "SafeCursor",
    "CollectionCopyEngine",
    "MigrationEngine",
    "create_migration_engine",
    "IndexSpec",
    "IndexTranslator",
    "Resolver",
    "TaskScheduler",
]
