"""
Index Translation
Recreates secondary indexes and collection storage options on the target
"""
import json
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from bson import json_util
from pymongo import IndexModel
from pymongo.errors import AutoReconnect, PyMongoError

from ..config.manager import CollectionCreationOptions, CopyOptions, RetrySettings
from ..core.database import server_version

logger = logging.getLogger(__name__)

DEFAULT_INDEX_NAME = "_id_"

# createIndexes (several indexes in one request) exists since 2.6
BATCHED_INDEX_CREATION_VERSION = (2, 6)

# Fields of a listIndexes entry that must not be sent back when recreating it
_NON_CREATION_FIELDS = ("key", "ns", "v")

# Storage page sizes per allocation preset
# defaults are allocation_size=4KB,internal_page_max=4KB,leaf_page_max=32KB
ALLOCATION_PRESETS = {
    "2x": ("allocation_size=8KB", "leaf_page_max=64KB", "internal_page_max=8KB"),
    "4x": ("allocation_size=16KB", "leaf_page_max=64KB", "internal_page_max=16KB"),
    "8x": ("allocation_size=32KB", "leaf_page_max=128KB", "internal_page_max=32KB"),
}

TIMEOUT_ERRORS = (AutoReconnect, socket.timeout, OSError)


@dataclass(frozen=True)
class IndexSpec:
    """An index definition captured from the source collection"""
    name: str
    key_pattern: List[tuple]
    background: bool = False
    sparse: bool = False
    unique: bool = False
    ttl: Optional[int] = None
    raw_definition: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "IndexSpec":
        """Build a spec from a listIndexes entry"""
        raw = dict(document)
        return cls(
            name=raw.get("name", ""),
            key_pattern=list(raw.get("key", {}).items()),
            background=bool(raw.get("background", False)),
            sparse=bool(raw.get("sparse", False)),
            unique=bool(raw.get("unique", False)),
            ttl=raw.get("expireAfterSeconds"),
            raw_definition=raw,
        )

    def creation_options(self, force_background: bool = False, force_sparse: bool = False) -> Dict[str, Any]:
        """Index options for the target, keeping everything the source declared"""
        options = {k: v for k, v in self.raw_definition.items() if k not in _NON_CREATION_FIELDS}
        options["name"] = self.name
        if force_background or self.background:
            options["background"] = True
        if force_sparse or self.sparse:
            options["sparse"] = True
        return options

    def to_model(self, force_background: bool = False, force_sparse: bool = False) -> IndexModel:
        return IndexModel(self.key_pattern, **self.creation_options(force_background, force_sparse))

    def describe(self) -> str:
        return json_util.dumps(self.raw_definition)


def build_storage_engine_options(options: CollectionCreationOptions) -> Optional[Dict[str, Any]]:
    """
    WiredTiger storage engine document for collection creation

    Combines the raw config string with the compressor choice and the page
    size preset; later settings replace earlier ones with the same name.
    """
    config: List[str] = []
    if options.config_string and options.config_string.strip():
        config.extend(item.strip() for item in options.config_string.split(",") if item.strip())

    def _replace(prefixes, values):
        config[:] = [item for item in config
                     if not any(item.lower().startswith(prefix) for prefix in prefixes)]
        config.extend(values)

    if options.compressor:
        _replace(("block_compressor=",), ["block_compressor=" + options.compressor])

    preset = ALLOCATION_PRESETS.get(options.allocation_preset or "")
    if preset:
        _replace(("allocation_size=", "leaf_page_max=", "internal_page_max="), preset)

    if not config:
        return None
    return {"wiredTiger": {"configString": ",".join(config)}}


def create_target_collection(target_collection, creation_options: CollectionCreationOptions) -> bool:
    """Create the target collection with storage options, if any are configured"""
    storage_engine = build_storage_engine_options(creation_options)
    if storage_engine is None:
        return False
    try:
        target_collection.database.create_collection(target_collection.name, storageEngine=storage_engine)
        logger.debug(f"{target_collection.full_name} - Created with storage options {json.dumps(storage_engine)}")
        return True
    except PyMongoError as e:
        logger.error(f"{target_collection.full_name} - Failed to create collection with storage options: {e}")
        return False


class IndexTranslator:
    """
    Copies index definitions from a source collection to a target collection

    - Skips the default _id index
    - Honors forced background/sparse flags
    - Uses a single createIndexes request when the target supports it
    - Treats creation timeouts as builds still running on the server
    """

    def __init__(self, options: Optional[CopyOptions] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.options = options or CopyOptions()
        self.retry: RetrySettings = self.options.retry
        self.sleep = sleep

    def read_index_specs(self, source_collection) -> List[IndexSpec]:
        """Secondary index definitions of the source collection"""
        specs = []
        for document in source_collection.list_indexes():
            if document.get("name") == DEFAULT_INDEX_NAME:
                continue
            specs.append(IndexSpec.from_document(document))
        return specs

    def supports_batched_creation(self, target_collection) -> bool:
        try:
            return server_version(target_collection.database.client) >= BATCHED_INDEX_CREATION_VERSION
        except PyMongoError as e:
            logger.debug(f"Could not read target server version, assuming batched index creation: {e}")
            return True

    def recreate(self, source_collection, target_collection) -> int:
        """Create the source indexes on the target; returns how many were requested"""
        name = f"{source_collection.database.name}.{source_collection.name}"
        logger.debug(f"{name} - Start index creation")

        specs = self.read_index_specs(source_collection)
        if not specs:
            logger.debug(f"{name} - No secondary indexes")
            return 0

        if self.supports_batched_creation(target_collection):
            pending = self._create_batched(name, target_collection, specs)
        else:
            pending = [spec for spec in specs if not self._create_single(name, target_collection, spec)]

        if pending:
            self._wait_for_indexes(name, target_collection, pending)

        logger.debug(f"{name} - Index creation completed")
        return len(specs)

    def _models(self, specs: List[IndexSpec]) -> List[IndexModel]:
        return [spec.to_model(self.options.indexes_background, self.options.indexes_sparse)
                for spec in specs]

    def _create_batched(self, name: str, target_collection, specs: List[IndexSpec]) -> List[IndexSpec]:
        """Create every index in one request; returns the specs still building after a timeout"""
        logger.debug(f"{name} - Creating {len(specs)} indexes")
        try:
            target_collection.create_indexes(self._models(specs))
        except TIMEOUT_ERRORS as e:
            logger.warning(f"{name} - Timeout creating {len(specs)} indexes, this may occur in large "
                           f"collections: {e}")
            return list(specs)
        except PyMongoError as e:
            logger.error(f"{name} - Error creating indexes: {e}")
            logger.error(f"{name} - Index details: [{', '.join(spec.describe() for spec in specs)}]")
        return []

    def _create_single(self, name: str, target_collection, spec: IndexSpec) -> bool:
        """Create one index; False if the request timed out and the build may still be running"""
        logger.debug(f"{name} - Creating index: {spec.name}")
        try:
            target_collection.create_index(
                spec.key_pattern,
                **spec.creation_options(self.options.indexes_background, self.options.indexes_sparse)
            )
        except TIMEOUT_ERRORS as e:
            logger.warning(f"{name} - Timeout creating index {spec.name}, this may occur in large "
                           f"collections: {e}")
            return False
        except PyMongoError as e:
            logger.error(f"{name} - Error creating index {spec.name}: {e}")
            logger.warning(f"{name} - Index details: {spec.describe()}")
        return True

    def _wait_for_indexes(self, name: str, target_collection, specs: List[IndexSpec]) -> bool:
        """Poll until every index shows up on the target; one budget covers all of them"""
        pending = list(specs)
        for attempt in range(self.retry.index_poll_attempts):
            self.sleep(self.retry.index_poll_interval_seconds)
            try:
                existing = target_collection.index_information()
            except PyMongoError as e:
                logger.debug(f"{name} - Index check {attempt + 1} failed: {e}")
                continue
            for spec in pending:
                if spec.name in existing:
                    logger.info(f"{name} - Index {spec.name} is ready")
            pending = [spec for spec in pending if spec.name not in existing]
            if not pending:
                return True

        for spec in pending:
            logger.warning(f"{name} - Index {spec.name} not found after waiting, you should check manually "
                           f"after a while. Index details: {spec.describe()}")
        return False
