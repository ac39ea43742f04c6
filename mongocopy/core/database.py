"""
Core Database Helpers
Endpoint configuration, client creation and collection inspection on top of pymongo
"""
import logging
import socket
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import InvalidOperation, PyMongoError
from pymongo.uri_parser import parse_uri

logger = logging.getLogger(__name__)

# Minimum timeouts applied to every endpoint, large copies keep cursors open for a long time
MIN_CONNECT_TIMEOUT_MS = 30000
MIN_SOCKET_TIMEOUT_MS = 4 * 60000
MIN_MAX_IDLE_TIME_MS = 30000

SYSTEM_DATABASES = ("local", "system")


@dataclass
class EndpointConfig:
    """Connection descriptor for one server"""
    connection_string: str
    username: Optional[str] = None
    password: Optional[str] = None
    auth_database: Optional[str] = None
    connect_timeout_ms: int = MIN_CONNECT_TIMEOUT_MS
    socket_timeout_ms: int = MIN_SOCKET_TIMEOUT_MS
    max_idle_time_ms: int = MIN_MAX_IDLE_TIME_MS
    max_pool_size: int = 100

    @property
    def uri(self) -> str:
        """Connection string with a mongodb:// scheme"""
        uri = (self.connection_string or "").strip()
        if uri and "://" not in uri:
            uri = "mongodb://" + uri
        return uri


def build_client_options(config: EndpointConfig) -> Dict[str, Any]:
    """Keyword arguments for MongoClient, filling gaps left by the connection string"""
    options: Dict[str, Any] = {
        "connectTimeoutMS": max(config.connect_timeout_ms, MIN_CONNECT_TIMEOUT_MS),
        "socketTimeoutMS": max(config.socket_timeout_ms, MIN_SOCKET_TIMEOUT_MS),
        "maxIdleTimeMS": max(config.max_idle_time_ms, MIN_MAX_IDLE_TIME_MS),
        "maxPoolSize": config.max_pool_size,
    }

    parsed = parse_uri(config.uri) if config.uri else {}
    # Credentials in the uri win over the discrete settings
    if config.username and not parsed.get("username"):
        options["username"] = config.username
    if config.password and not parsed.get("password"):
        options["password"] = config.password
    if config.auth_database and not parsed.get("options", {}).get("authsource"):
        options["authSource"] = config.auth_database
    return options


def create_client(config: EndpointConfig) -> MongoClient:
    """Create a MongoClient for the endpoint"""
    if not config.uri:
        raise ValueError("Endpoint connection string is required")
    return MongoClient(config.uri, **build_client_options(config))


def ping(client: MongoClient) -> bool:
    """Check that the server answers"""
    try:
        client.admin.command("ping")
        return True
    except PyMongoError as e:
        logger.error(f"❌ Ping failed: {e}")
        return False


def _primary_address(client) -> Optional[Tuple[str, int]]:
    try:
        address = client.address
    except (InvalidOperation, PyMongoError):
        address = None
    if address:
        return address
    # Fall back to the first seed
    try:
        nodes = sorted(client.nodes)
    except (AttributeError, PyMongoError):
        nodes = []
    return nodes[0] if nodes else None


def _resolve_host(host: str) -> Optional[str]:
    try:
        return socket.gethostbyname(host)
    except (OSError, UnicodeError):
        return None


def servers_are_equal(source_client, target_client) -> bool:
    """
    Check if two clients point at the same physical server

    Compares the resolved IP address and port of the primary, falling back to
    a case-insensitive host name comparison.
    """
    source = _primary_address(source_client)
    target = _primary_address(target_client)
    if not source or not target:
        return False

    source_host, source_port = source
    target_host, target_port = target
    if source_port != target_port:
        return False

    source_ip = _resolve_host(source_host)
    target_ip = _resolve_host(target_host)
    if source_ip and target_ip:
        return source_ip == target_ip
    return source_host.lower() == target_host.lower()


def server_version(client) -> Tuple[int, ...]:
    """Server version as a tuple, e.g. (6, 0, 3)"""
    info = client.server_info()
    version_array = info.get("versionArray")
    if version_array:
        return tuple(int(part) for part in version_array[:3])
    parts = []
    for part in str(info.get("version", "0")).split(".")[:3]:
        digits = "".join(ch for ch in part if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def is_system_collection(database_name: str, collection_name: str) -> bool:
    """System collections and the local/system databases are never copied"""
    full_name = f"{database_name}.{collection_name}"
    return ("system." in full_name.lower() or
            database_name.lower() in SYSTEM_DATABASES)


def collection_exists(database: Database, name: str) -> bool:
    """Check whether a collection exists"""
    return name in database.list_collection_names()


def collection_options(database: Database, name: str) -> Dict[str, Any]:
    """Creation options of a collection (capped, size, storageEngine...), empty if it does not exist"""
    for info in database.list_collections(filter={"name": name}):
        return dict(info.get("options") or {})
    return {}


def average_document_size(collection: Collection) -> int:
    """Average document size in bytes from collStats, 0 when the collection is empty"""
    raw = collection.database.command("collStats", collection.name)
    return int(raw.get("avgObjSize") or 0)


def find_max_key(collection: Collection, key: str = "_id") -> Optional[Dict[str, Any]]:
    """Document holding the largest key value, projected to the key only"""
    return collection.find_one({}, projection={key: 1}, sort=[(key, -1)])
