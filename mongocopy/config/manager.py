"""
Configuration Management
Copy options, job selection and endpoint settings loaded from files and environment variables
"""
import os
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional
from pathlib import Path

import yaml
from dotenv import load_dotenv

from ..core.database import EndpointConfig
from ..core.wildcard import has_wildcard

logger = logging.getLogger(__name__)

VALID_BLOCK_COMPRESSORS = ("none", "zlib", "snappy")
VALID_ALLOCATIONS = ("2x", "4x", "8x")

_TRUE_VALUES = ("1", "true", "yes", "y", "on")
_FALSE_VALUES = ("0", "false", "no", "n", "off", "")


class ConfigurationError(ValueError):
    """Invalid job configuration, raised before any copying starts"""


def parse_bool(value: Any, default: bool = False) -> bool:
    """Interpret a config value as a boolean"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value!r}")


def parse_list(value: Any) -> List[str]:
    """Accept a list, a JSON array or a ',' / ';' separated string"""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                value = text.strip("[]").split(",")
        else:
            value = text.replace(";", ",").split(",")
    return [str(item).strip() for item in value if str(item).strip()]


@dataclass(frozen=True)
class CollectionCreationOptions:
    """Storage options that can only be set when a collection is created"""
    block_compressor: Optional[str] = None
    allocation: Optional[str] = None
    config_string: Optional[str] = None

    @property
    def compressor(self) -> Optional[str]:
        """Normalized compressor name, None if unset or not allowed"""
        if not self.block_compressor:
            return None
        name = self.block_compressor.strip().lower()
        return name if name in VALID_BLOCK_COMPRESSORS else None

    @property
    def allocation_preset(self) -> Optional[str]:
        """Normalized allocation preset name, None if unset"""
        if not self.allocation or not self.allocation.strip():
            return None
        return self.allocation.strip().lower()

    def has_options(self) -> bool:
        """True if the target must be created with custom storage options"""
        return (self.compressor is not None or self.allocation_preset is not None or
                bool(self.config_string and self.config_string.strip()))


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for each retried operation"""
    cursor_max_errors: int = 5
    cursor_retry_delay_seconds: float = 2.5
    insert_retries: int = 1
    insert_retry_delay_seconds: float = 1.0
    index_poll_attempts: int = 30
    index_poll_interval_seconds: float = 10.0


@dataclass(frozen=True)
class CopyOptions:
    """Options read by every collection copy task"""
    batch_size: int = -1
    copy_indexes: bool = True
    drop_target_first: bool = False
    resume: bool = False
    skip_existing: bool = False
    if_smaller: bool = False
    indexes_before: bool = False
    indexes_background: bool = False
    indexes_sparse: bool = False
    lazy_wait_ms: int = -1
    resume_key: str = "_id"
    progress_log_interval: int = 150
    creation_options: CollectionCreationOptions = field(default_factory=CollectionCreationOptions)
    retry: RetrySettings = field(default_factory=RetrySettings)

    # Flat option names, snake_case and the names used by the original command line tool
    _ALIASES = {
        "batch_size": ("batch_size", "batchSize", "insertBatchSize", "insert-batch-size"),
        "copy_indexes": ("copy_indexes", "copyIndexes", "copy-indexes"),
        "drop_target_first": ("drop_target_first", "dropTargetFirst", "drop-collections", "drop_collections"),
        "resume": ("resume",),
        "skip_existing": ("skip_existing", "skipExisting", "skip-existing"),
        "if_smaller": ("if_smaller", "ifSmaller", "if-smaller"),
        "indexes_before": ("indexes_before", "indexesBefore", "copy-indexes-before"),
        "indexes_background": ("indexes_background", "indexesBackground", "indexes-background"),
        "indexes_sparse": ("indexes_sparse", "indexesSparse", "indexes-sparse"),
        "lazy_wait_ms": ("lazy_wait_ms", "lazyWaitMillis", "lazy-wait"),
        "resume_key": ("resume_key", "resumeKey", "resume-key"),
        "progress_log_interval": ("progress_log_interval",),
    }
    _CREATION_ALIASES = {
        "block_compressor": ("block_compressor", "collection-wt-block-compressor"),
        "allocation": ("allocation", "collection-wt-allocation"),
        "config_string": ("config_string", "collection-wt-configString"),
    }
    _INT_FIELDS = ("batch_size", "lazy_wait_ms", "progress_log_interval")
    _STR_FIELDS = ("resume_key",)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "CopyOptions":
        """Build options from a flat key -> value mapping"""
        values = dict(values or {})
        kwargs: Dict[str, Any] = {}

        for name, aliases in cls._ALIASES.items():
            raw = _first_present(values, aliases)
            if raw is None:
                continue
            if name in cls._INT_FIELDS:
                try:
                    kwargs[name] = int(raw)
                except (TypeError, ValueError):
                    raise ConfigurationError(f"Invalid integer for {name}: {raw!r}")
            elif name in cls._STR_FIELDS:
                kwargs[name] = str(raw)
            else:
                kwargs[name] = parse_bool(raw)

        creation = values.get("creation_options")
        if isinstance(creation, CollectionCreationOptions):
            kwargs["creation_options"] = creation
        else:
            creation_values = dict(creation or {})
            creation_kwargs = {}
            for name, aliases in cls._CREATION_ALIASES.items():
                raw = _first_present(creation_values, aliases)
                if raw is None:
                    raw = _first_present(values, aliases)
                if raw is not None:
                    creation_kwargs[name] = str(raw)
            kwargs["creation_options"] = CollectionCreationOptions(**creation_kwargs)

        retry = values.get("retry")
        if isinstance(retry, RetrySettings):
            kwargs["retry"] = retry
        elif retry:
            kwargs["retry"] = RetrySettings(**retry)

        return cls(**kwargs)


def _first_present(values: Mapping[str, Any], keys) -> Any:
    for key in keys:
        if key in values and values[key] is not None:
            return values[key]
    return None


@dataclass(frozen=True)
class CopySelection:
    """Which databases and collections a job copies"""
    source_databases: List[str] = field(default_factory=list)
    target_databases: List[str] = field(default_factory=list)
    collections: List[str] = field(default_factory=list)
    default_database: Optional[str] = None
    target_collection: Optional[str] = None
    collection_suffix: Optional[str] = None


@dataclass
class JobConfig:
    """Main job configuration"""
    source: EndpointConfig = field(default_factory=lambda: EndpointConfig(""))
    target: EndpointConfig = field(default_factory=lambda: EndpointConfig(""))
    selection: CopySelection = field(default_factory=CopySelection)
    options: CopyOptions = field(default_factory=CopyOptions)
    threads: int = 1
    queue_size: int = 1000
    log_level: str = "INFO"
    show_progress: bool = False
    strict: bool = False


class ConfigManager:
    """
    Job configuration manager with support for:
    - Environment variables
    - Configuration files (JSON/YAML)
    - Explicit overrides (command line)
    - Validation
    """

    def __init__(self, config_prefix: str = "MONGOCOPY"):
        self.config_prefix = config_prefix
        self.config: Optional[JobConfig] = None
        self._load_environment_variables()

    def _load_environment_variables(self):
        """Load environment variables from .env files"""
        env_files = ['.env_local', '.env', 'config.env']
        for env_file in env_files:
            if Path(env_file).exists():
                load_dotenv(env_file)
                logger.info(f"Loaded environment variables from {env_file}")
                break

    def load_config(self, config_file: Optional[str] = None,
                    overrides: Optional[Dict[str, Any]] = None) -> JobConfig:
        """Load configuration from file, environment variables and overrides"""
        config_data: Dict[str, Any] = {}

        if config_file:
            file_path = Path(config_file)
            if file_path.name.startswith('.env') or file_path.suffix.lower() == '.env':
                if not file_path.exists():
                    raise ConfigurationError(f"Configuration file not found: {config_file}")
                load_dotenv(config_file, override=True)
            else:
                config_data.update(self._load_config_file(config_file))

        # Environment variables fill in what the file left out
        for key, value in self._load_from_environment().items():
            config_data.setdefault(key, value)

        for key, value in (overrides or {}).items():
            if value is not None:
                config_data[key] = value

        self.config = self._create_config_object(config_data)
        self._validate_config(self.config)

        logger.info(f"Configuration loaded ({self.config.threads} thread(s))")
        return self.config

    def _load_config_file(self, config_file: str) -> Dict[str, Any]:
        """Load configuration from a JSON or YAML file"""
        file_path = Path(config_file)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_file}")

        with open(file_path, 'r') as f:
            if file_path.suffix.lower() == '.json':
                data = json.load(f)
            elif file_path.suffix.lower() in ['.yml', '.yaml']:
                data = yaml.safe_load(f)
            else:
                raise ConfigurationError(f"Unsupported configuration file format: {file_path.suffix}")
        return data or {}

    def _load_from_environment(self) -> Dict[str, Any]:
        """Load flat configuration keys from prefixed environment variables"""
        p = self.config_prefix
        keys = {
            "source": "SOURCE",
            "source_username": "SOURCE_USERNAME",
            "source_password": "SOURCE_PASSWORD",
            "source_auth_database": "SOURCE_AUTH_DATABASE",
            "target": "TARGET",
            "target_username": "TARGET_USERNAME",
            "target_password": "TARGET_PASSWORD",
            "target_auth_database": "TARGET_AUTH_DATABASE",
            "source_databases": "SOURCE_DATABASES",
            "target_databases": "TARGET_DATABASES",
            "collections": "COLLECTIONS",
            "target_collection": "TARGET_COLLECTION",
            "collection_suffix": "COLLECTION_SUFFIX",
            "threads": "THREADS",
            "log_level": "LOG_LEVEL",
            "batch_size": "BATCH_SIZE",
            "copy_indexes": "COPY_INDEXES",
            "drop_target_first": "DROP_TARGET_FIRST",
            "resume": "RESUME",
            "skip_existing": "SKIP_EXISTING",
            "if_smaller": "IF_SMALLER",
            "indexes_before": "INDEXES_BEFORE",
            "indexes_background": "INDEXES_BACKGROUND",
            "indexes_sparse": "INDEXES_SPARSE",
            "lazy_wait_ms": "LAZY_WAIT_MS",
            "block_compressor": "BLOCK_COMPRESSOR",
            "allocation": "ALLOCATION",
            "config_string": "CONFIG_STRING",
        }
        config = {}
        for key, suffix in keys.items():
            value = os.getenv(f"{p}_{suffix}")
            if value is not None:
                config[key] = value
        return config

    def _create_config_object(self, data: Dict[str, Any]) -> JobConfig:
        """Create JobConfig object from a flat dictionary"""
        source = self._endpoint(data, "source")
        target = self._endpoint(data, "target")
        if not target.connection_string:
            # Copies between databases of the same server only need one endpoint
            target = replace(source)

        selection = CopySelection(
            source_databases=parse_list(data.get("source_databases")),
            target_databases=parse_list(data.get("target_databases")),
            collections=parse_list(data.get("collections")),
            default_database=data.get("default_database"),
            target_collection=data.get("target_collection") or None,
            collection_suffix=data.get("collection_suffix") or None,
        )

        try:
            threads = int(data.get("threads", 1))
            queue_size = int(data.get("queue_size", 1000))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}")

        return JobConfig(
            source=source,
            target=target,
            selection=selection,
            options=CopyOptions.from_mapping(data),
            threads=max(threads, 1),
            queue_size=max(queue_size, 1),
            log_level=str(data.get("log_level", "INFO")).upper(),
            show_progress=parse_bool(data.get("show_progress"), False),
            strict=parse_bool(data.get("strict"), False),
        )

    @staticmethod
    def _endpoint(data: Dict[str, Any], prefix: str) -> EndpointConfig:
        value = data.get(prefix)
        if isinstance(value, dict):
            return EndpointConfig(**value)
        return EndpointConfig(
            connection_string=value or "",
            username=data.get(f"{prefix}_username"),
            password=data.get(f"{prefix}_password"),
            auth_database=data.get(f"{prefix}_auth_database"),
        )

    def _validate_config(self, config: JobConfig):
        """Validate configuration, collecting every problem before failing"""
        errors = validate_selection(config.selection)

        if not config.source.connection_string:
            errors.insert(0, "Source connection information is required")

        if config.options.creation_options.block_compressor and not config.options.creation_options.compressor:
            logger.warning(f"Ignoring unsupported block compressor "
                           f"'{config.options.creation_options.block_compressor}' "
                           f"(allowed: {', '.join(VALID_BLOCK_COMPRESSORS)})")

        errors.extend(validate_options(config.selection, config.options))

        allocation = config.options.creation_options.allocation
        if allocation and config.options.creation_options.allocation_preset not in VALID_ALLOCATIONS:
            errors.append(f"Invalid allocation preset '{allocation}' (allowed: {', '.join(VALID_ALLOCATIONS)})")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get_config(self) -> JobConfig:
        """Get current configuration"""
        if self.config is None:
            raise RuntimeError("Configuration not loaded. Call load_config() first.")
        return self.config


def validate_selection(selection: CopySelection) -> List[str]:
    """Problems with a database/collection selection, empty when valid"""
    errors = []
    if selection.target_databases:
        if any(has_wildcard(name) for name in selection.source_databases):
            errors.append("Wildcards cannot be used in source database names when target databases are listed")
        if any(has_wildcard(name) for name in selection.target_databases):
            errors.append("Wildcards cannot be used in target database names")
        if len(selection.source_databases) != len(selection.target_databases):
            errors.append(f"Different number of source ({len(selection.source_databases)}) "
                          f"and target ({len(selection.target_databases)}) databases")
    if selection.target_collection and has_wildcard(selection.target_collection):
        errors.append("Wildcards cannot be used in the target collection name")
    return errors


def validate_options(selection: CopySelection, options: CopyOptions) -> List[str]:
    """Copy options that conflict with the selection, empty when valid"""
    errors = []
    if selection.target_collection:
        per_target = [name for name, enabled in (("resume", options.resume),
                                                 ("skip_existing", options.skip_existing),
                                                 ("if_smaller", options.if_smaller)) if enabled]
        if per_target:
            errors.append(f"{', '.join(per_target)} cannot be used when merging into one target collection")
    return errors
