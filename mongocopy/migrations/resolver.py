"""
Mapping Resolver
Expands database/collection selections into concrete source -> target pairs
"""
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import ConfigurationError as DriverConfigurationError

from ..config.manager import ConfigurationError, CopyOptions, CopySelection, validate_selection
from ..core.database import SYSTEM_DATABASES, is_system_collection, servers_are_equal
from ..core.wildcard import filter_names

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseMapping:
    """Source and target database handles"""
    source: Database
    target: Database

    def __str__(self) -> str:
        return f"{self.source.name} -> {self.target.name}"


@dataclass(frozen=True)
class CollectionMapping:
    """Source and target collection names"""
    source: str
    target: str


@dataclass(frozen=True)
class CopyTask:
    """One collection to copy"""
    databases: DatabaseMapping
    collections: CollectionMapping
    options: CopyOptions

    @property
    def source_name(self) -> str:
        return f"{self.databases.source.name}.{self.collections.source}"

    @property
    def target_name(self) -> str:
        return f"{self.databases.target.name}.{self.collections.target}"

    def __str__(self) -> str:
        return f"{self.source_name} -> {self.target_name}"


def _find_name(name: str, available: List[str]) -> Optional[str]:
    """Exact match first, then case-insensitive"""
    if name in available:
        return name
    folded = name.casefold()
    return next((candidate for candidate in available if candidate.casefold() == folded), None)


def _split_pair(token: str) -> Optional[Tuple[str, str]]:
    if token.find("=") <= 0:
        return None
    source, _, target = token.partition("=")
    return source.strip(), target.strip()


class Resolver:
    """
    Resolves a CopySelection against the live source server

    - Explicit names (exact, then case-insensitive)
    - Wildcard patterns
    - source=target rename pairs
    - Merge (single target collection) and duplicate (name suffix) modes
    - Never yields a collection copied onto itself
    """

    def __init__(self, source_client, target_client, selection: CopySelection,
                 same_server: Optional[bool] = None):
        errors = validate_selection(selection)
        if errors:
            raise ConfigurationError("; ".join(errors))

        self.source_client = source_client
        self.target_client = target_client
        self.selection = selection
        self.same_server = (servers_are_equal(source_client, target_client)
                            if same_server is None else same_server)
        self.skipped_self_copies = 0

    def _default_database(self) -> str:
        if self.selection.default_database:
            return self.selection.default_database
        try:
            return self.source_client.get_default_database().name
        except (DriverConfigurationError, TypeError) as e:
            raise ConfigurationError(f"No source database selected and no default database in the connection string: {e}")

    def resolve_databases(self) -> Iterator[DatabaseMapping]:
        """Source/target database pairs for the selection"""
        source_names = self.selection.source_databases
        target_names = self.selection.target_databases

        if not source_names:
            name = self._default_database()
            yield DatabaseMapping(self.source_client[name], self.target_client[name])
            return

        available = [name for name in self.source_client.list_database_names()
                     if name.lower() not in SYSTEM_DATABASES]

        if target_names:
            for source, target in zip(source_names, target_names):
                name = _find_name(source, available)
                if not name or not target:
                    logger.warning(f"Source database '{source}' not found, skipping")
                    continue
                yield DatabaseMapping(self.source_client[name], self.target_client[target])
            return

        for token in source_names:
            pair = _split_pair(token)
            if pair:
                name = _find_name(pair[0], available)
                if not name or not pair[1]:
                    logger.warning(f"Source database '{pair[0]}' not found, skipping")
                    continue
                yield DatabaseMapping(self.source_client[name], self.target_client[pair[1]])
                continue

            name = _find_name(token, available)
            matches = [name] if name else filter_names(token, available)
            if not matches:
                logger.warning(f"No source database matches '{token}'")
            for db in matches:
                yield DatabaseMapping(self.source_client[db], self.target_client[db])

    def resolve_collections(self, source_database: Database) -> Iterator[CollectionMapping]:
        """Source/target collection pairs inside one database"""
        available = [name for name in source_database.list_collection_names()
                     if not is_system_collection(source_database.name, name)]

        if not self.selection.collections:
            for name in available:
                yield self._mapping(name, name)
            return

        for token in self.selection.collections:
            if token in available:
                yield self._mapping(token, token)
                continue

            pair = _split_pair(token)
            if pair:
                name = _find_name(pair[0], available)
                if name and pair[1]:
                    yield CollectionMapping(name, pair[1])
                else:
                    logger.warning(f"{source_database.name}.{pair[0]} - Collection not found, skipping")
                continue

            matches = filter_names(token, available)
            if not matches:
                logger.warning(f"{source_database.name} - No collection matches '{token}'")
            for name in matches:
                yield self._mapping(name, name)

    def _mapping(self, source: str, target: str) -> CollectionMapping:
        if self.selection.target_collection:
            target = self.selection.target_collection
        elif self.selection.collection_suffix:
            target = target + self.selection.collection_suffix
        return CollectionMapping(source, target)

    def is_self_copy(self, databases: DatabaseMapping, collections: CollectionMapping) -> bool:
        return (self.same_server and
                databases.source.name == databases.target.name and
                collections.source == collections.target)

    def iter_tasks(self, options: CopyOptions) -> Iterator[CopyTask]:
        """Lazily enumerate every copy task of the job"""
        for databases in self.resolve_databases():
            for collections in self.resolve_collections(databases.source):
                if self.is_self_copy(databases, collections):
                    self.skipped_self_copies += 1
                    logger.warning(f"Skipping collection, since it would be copied to itself! "
                                   f"Database: {databases.source.name}, Collection: {collections.source}")
                    continue
                yield CopyTask(databases, collections, options)
