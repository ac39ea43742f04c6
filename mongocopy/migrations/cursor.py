"""
Safe Cursor
Resumable, error tolerant iteration over a collection ordered by a monotonic key
"""
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class SafeCursor:
    """
    Iterates a collection in ascending key order, reopening the server side
    cursor after the last yielded key whenever iteration fails.

    - Documents come out strictly increasing in `key`, never twice
    - Up to `max_errors` consecutive failures are retried after `retry_delay` seconds
    - One more failure than that is raised to the caller
    - Single use: iterate it once
    """

    def __init__(self, collection, key: str = "_id", query: Optional[Dict[str, Any]] = None,
                 last: Optional[Dict[str, Any]] = None, max_errors: int = 5,
                 retry_delay: float = 2.5, batch_size: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.collection = collection
        self.key = key or "_id"
        self.query = query
        self.last = last
        self.max_errors = max_errors
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.sleep = sleep
        self.error_count = 0
        self.restarts = 0
        self._consumed = False

    def build_query(self) -> Dict[str, Any]:
        """Caller query restricted to keys greater than the last yielded one"""
        if self.last is None or self.key not in self.last:
            return dict(self.query or {})
        floor = {self.key: {"$gt": self.last[self.key]}}
        if self.query:
            return {"$and": [self.query, floor]}
        return floor

    def _open(self):
        cursor = self.collection.find(self.build_query(), sort=[(self.key, ASCENDING)])
        if self.batch_size:
            cursor = cursor.batch_size(self.batch_size)
        return iter(cursor)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if self._consumed:
            raise RuntimeError("SafeCursor can only be iterated once")
        self._consumed = True
        return self._generate()

    def _generate(self) -> Iterator[Dict[str, Any]]:
        while True:
            cursor = self._open()
            while True:
                try:
                    document = next(cursor)
                except StopIteration:
                    return
                except PyMongoError as e:
                    self.error_count += 1
                    last_key = self.last.get(self.key) if self.last else None
                    logger.warning(f"{self.collection.full_name} - {e}.. try {self.error_count} of "
                                   f"{self.max_errors}. Last {self.key}: {last_key}")
                    if self.error_count > self.max_errors:
                        raise
                    self._close(cursor)
                    self.sleep(self.retry_delay)
                    self.restarts += 1
                    break

                self.last = document
                self.error_count = 0
                yield document

    @staticmethod
    def _close(cursor):
        close = getattr(cursor, "close", None)
        if close is None:
            return
        try:
            close()
        except PyMongoError as e:
            logger.debug(f"Failed to close cursor: {e}")
