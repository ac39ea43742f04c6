"""
mongocopy
Resumable bulk copy of MongoDB databases and collections across servers
"""

__version__ = "1.0.0"

# Core components
from .core.database import (
    EndpointConfig,
    create_client,
    ping,
    servers_are_equal,
)
from .core.wildcard import has_wildcard, is_match

# Configuration management
from .config.manager import (
    ConfigManager,
    ConfigurationError,
    CollectionCreationOptions,
    CopyOptions,
    CopySelection,
    JobConfig,
    RetrySettings,
)

# Copy engine
from .migrations.cursor import SafeCursor
from .migrations.indexes import IndexSpec, IndexTranslator
from .migrations.resolver import (
    CollectionMapping,
    CopyTask,
    DatabaseMapping,
    Resolver,
)
from .migrations.scheduler import TaskScheduler
from .migrations.engine import (
    CollectionCopyEngine,
    MigrationEngine,
    compute_batch_size,
    create_migration_engine,
)

# Monitoring
from .monitoring.metrics import (
    CopyResult,
    CopyStatus,
    JobSummary,
    MetricsCollector,
)

__all__ = [
    # Core
    "EndpointConfig",
    "create_client",
    "ping",
    "servers_are_equal",
    "has_wildcard",
    "is_match",

    # Configuration
    "ConfigManager",
    "ConfigurationError",
    "CollectionCreationOptions",
    "CopyOptions",
    "CopySelection",
    "JobConfig",
    "RetrySettings",

    # Copy engine
    "SafeCursor",
    "IndexSpec",
    "IndexTranslator",
    "CollectionMapping",
    "CopyTask",
    "DatabaseMapping",
    "Resolver",
    "TaskScheduler",
    "CollectionCopyEngine",
    "MigrationEngine",
    "compute_batch_size",
    "create_migration_engine",

    # Monitoring
    "CopyResult",
    "CopyStatus",
    "JobSummary",
    "MetricsCollector",
]
