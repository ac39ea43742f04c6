"""
Migration Engine
Per-collection copy pipeline and the job runner that fans it out over worker threads
"""
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import BulkWriteError, PyMongoError
from tqdm import tqdm

from ..config.manager import (
    CollectionCreationOptions,
    ConfigurationError,
    CopyOptions,
    JobConfig,
    validate_options,
)
from ..core.database import (
    average_document_size,
    collection_exists,
    collection_options,
    find_max_key,
    is_system_collection,
)
from ..monitoring.metrics import CopyResult, CopyStatus, JobSummary, MetricsCollector
from .cursor import SafeCursor
from .indexes import IndexTranslator, create_target_collection
from .resolver import CollectionMapping, CopyTask, Resolver
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

# Older servers capped a single insert request at 4MB
MAX_BATCH_PAYLOAD_BYTES = 4 * 1024 * 1024
# No throughput gain was measured above this many documents per batch
MAX_AUTO_BATCH_SIZE = 200
FALLBACK_BATCH_SIZE = 100

DUPLICATE_KEY_ERROR = 11000


def compute_batch_size(avg_obj_size: int) -> int:
    """Documents per insert batch for a given average document size"""
    if not avg_obj_size or avg_obj_size <= 0:
        return FALLBACK_BATCH_SIZE
    return min(MAX_BATCH_PAYLOAD_BYTES // int(avg_obj_size) + 1, MAX_AUTO_BATCH_SIZE)


class CollectionCopyEngine:
    """
    Copies one source collection into one target collection

    Pipeline:
    - Guard checks (system, missing and capped collections are skipped)
    - Batch size tuning from collection statistics
    - Target policy (skip-existing, resume, if-smaller, drop)
    - Target creation with storage options
    - Buffered insert loop over a SafeCursor
    - Index recreation before or after the data
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.metrics = metrics
        self.sleep = sleep

    def copy(self, source_database: Database, target_database: Database, source_name: str,
             target_name: Optional[str] = None, options: Optional[CopyOptions] = None) -> CopyResult:
        """Copy a collection, never raising; the outcome is in the returned result"""
        options = options or CopyOptions()
        target_name = target_name or source_name
        source_id = f"{source_database.name}.{source_name}"
        target_id = f"{target_database.name}.{target_name}"

        operation = self.metrics.start_operation(f"{source_id} -> {target_id}") if self.metrics else None
        try:
            result = self._copy(source_database, target_database, source_name, target_name, options)
        except Exception as e:
            logger.exception(f"{source_id} - Error copying collection to {target_id}: {e}")
            result = CopyResult(source_id, target_id, CopyStatus.FAILED, reason=str(e))

        if operation is not None:
            self.metrics.end_operation(operation, result.documents_copied,
                                       result.status is not CopyStatus.FAILED, result.reason)
        return result

    def _copy(self, source_database: Database, target_database: Database, source_name: str,
              target_name: str, options: CopyOptions) -> CopyResult:
        name = f"{source_database.name}.{source_name}"
        target_id = f"{target_database.name}.{target_name}"

        def skipped(reason: str) -> CopyResult:
            return CopyResult(name, target_id, CopyStatus.SKIPPED, reason=reason)

        # Guard checks
        if is_system_collection(source_database.name, source_name):
            return skipped("system collection")

        if not collection_exists(source_database, source_name):
            logger.warning(f"{name} - Collection not found")
            return skipped("collection not found")

        source = source_database[source_name]
        target = target_database[target_name]

        if collection_options(source_database, source_name).get("capped", False):
            logger.warning(f"{name} - Skipping capped collection (not supported)")
            return skipped("capped collection")

        logger.debug(f"{name} - Start collection copy")
        total = source.estimated_document_count()

        batch_size = self._resolve_batch_size(name, source, options.batch_size)

        # Target policy
        last: Optional[Dict[str, Any]] = None
        count = 0
        drop_target = options.drop_target_first
        if collection_exists(target_database, target_name):
            target_count = target.estimated_document_count()

            if options.skip_existing and target_count > 0:
                logger.info(f"{name} - Collection found in target database, skipping... [skip-existing]")
                return skipped("target not empty")

            if options.resume:
                last = find_max_key(target, options.resume_key)
                if last is not None and options.resume_key in last:
                    logger.info(f"{name} - Resuming collection copy, last {options.resume_key}: "
                                f"{last[options.resume_key]}")
                    count = target_count
                else:
                    last = None

            if options.if_smaller and target_count >= total:
                logger.info(f"{name} - Target collection of same size or larger, skipping... [if-smaller]")
                return skipped("target not smaller")

            # Storage options only apply on creation
            if options.creation_options.has_options() and target_count == 0:
                drop_target = True

            if drop_target and last is None:
                try:
                    target.drop()
                    logger.debug(f"{name} - Target collection dropped: {target_id}")
                except PyMongoError as e:
                    logger.error(f"{name} - Failed to drop target collection {target_id}, "
                                 f"aborting collection copy: {e}")
                    return CopyResult(name, target_id, CopyStatus.FAILED, reason=f"drop failed: {e}")

        if not collection_exists(target_database, target_name):
            create_target_collection(target, options.creation_options)

        translator = IndexTranslator(options, sleep=self.sleep)
        if options.indexes_before:
            translator.recreate(source, target)

        copied, duplicates = self._copy_documents(name, source, target, options, batch_size,
                                                  last, count, total)

        if options.copy_indexes and not options.indexes_before:
            translator.recreate(source, target)

        logger.info(f"{name} - Collection copy completed ({copied:,} documents to {target_id})")
        return CopyResult(name, target_id, CopyStatus.COMPLETED,
                          documents_copied=copied, documents_skipped=duplicates)

    def _resolve_batch_size(self, name: str, source: Collection, batch_size: int) -> int:
        if batch_size > 0:
            return batch_size
        try:
            batch_size = compute_batch_size(average_document_size(source))
            logger.debug(f"{name} - Insert batch size: {batch_size}")
        except PyMongoError as e:
            logger.warning(f"{name} - Failed to get collection statistics... continuing anyway: {e}")
            batch_size = FALLBACK_BATCH_SIZE
        return batch_size

    def _copy_documents(self, name: str, source: Collection, target: Collection, options: CopyOptions,
                        batch_size: int, last: Optional[Dict[str, Any]], count: int,
                        total: int) -> Tuple[int, int]:
        """Stream the source into the target in batches; returns (inserted, duplicates)"""
        cursor = SafeCursor(
            source,
            key=options.resume_key,
            last=last,
            max_errors=options.retry.cursor_max_errors,
            retry_delay=options.retry.cursor_retry_delay_seconds,
            sleep=self.sleep,
        )

        buffer: List[Dict[str, Any]] = []
        inserted = duplicates = 0
        loop = 0

        def flush():
            nonlocal inserted, duplicates, loop
            written, dups = self._write_batch(name, target, buffer, options)
            inserted += written
            duplicates += dups
            if loop % options.progress_log_interval == 0:
                self._log_progress(name, batch_size, count, total)
            loop += 1
            buffer.clear()

        for document in cursor:
            count += 1
            buffer.append(document)

            if len(buffer) >= batch_size:
                flush()
                if options.lazy_wait_ms > -1:
                    self.sleep(options.lazy_wait_ms / 1000.0)

        if buffer:
            loop = 0
            flush()

        return inserted, duplicates

    @staticmethod
    def _log_progress(name: str, batch_size: int, count: int, total: int):
        percentage = f"{count / total:.1%}" if total > 0 else "n/a"
        logger.info(f"{name} - batch size: {batch_size}, progress: {count:,} / {total:,} ({percentage})")

    def _write_batch(self, name: str, target: Collection, buffer: List[Dict[str, Any]],
                     options: CopyOptions) -> Tuple[int, int]:
        """Insert a batch, retrying per the retry settings; the last attempt raises"""
        for attempt in range(options.retry.insert_retries):
            try:
                return self._insert_batch(target, buffer)
            except PyMongoError as e:
                logger.error(f"{name} - Batch insert failed (attempt {attempt + 1}): {e}")
                self.sleep(options.retry.insert_retry_delay_seconds)
        return self._insert_batch(target, buffer)

    @staticmethod
    def _insert_batch(target: Collection, buffer: List[Dict[str, Any]]) -> Tuple[int, int]:
        """Unordered insert; duplicate key errors count as already copied"""
        try:
            result = target.insert_many(list(buffer), ordered=False)
            return len(result.inserted_ids), 0
        except BulkWriteError as e:
            details = e.details or {}
            errors = details.get("writeErrors", [])
            if errors and all(error.get("code") == DUPLICATE_KEY_ERROR for error in errors) \
                    and not details.get("writeConcernErrors"):
                return details.get("nInserted", 0), len(errors)
            raise


class MigrationEngine:
    """
    Copy job runner with:
    - Mapping resolution (names, wildcards, rename pairs)
    - Bounded parallelism over collections
    - Per-collection failure isolation
    - Job summary
    """

    def __init__(self, config: JobConfig, source_client, target_client,
                 same_server: Optional[bool] = None,
                 copy_engine: Optional[CollectionCopyEngine] = None):
        self.config = config
        self.source_client = source_client
        self.target_client = target_client
        self.same_server = same_server
        self.metrics_collector = MetricsCollector()
        self.copy_engine = copy_engine or CollectionCopyEngine(self.metrics_collector)
        self.progress_bar: Optional[tqdm] = None

    def _handle(self, task: CopyTask) -> CopyResult:
        return self.copy_engine.copy(
            task.databases.source,
            task.databases.target,
            task.collections.source,
            task.collections.target,
            task.options,
        )

    def _on_result(self, task: CopyTask, result: Optional[CopyResult], error: Optional[BaseException]):
        if error is not None:
            self.metrics_collector.record_failure(task.source_name, task.target_name, error)
        elif result is not None:
            self.metrics_collector.record_result(result)
        if self.progress_bar is not None:
            self.progress_bar.update(1)

    def _prepare_merge_targets(self, resolver: Resolver) -> CopyOptions:
        """
        Drop and create each shared merge target once, before any task runs

        Returns the options for the merge tasks, which must neither drop nor
        re-create a target that other tasks write into.
        """
        options = self.config.options
        target_name = self.config.selection.target_collection
        if not target_name:
            return options

        prepared = set()
        for databases in resolver.resolve_databases():
            database = databases.target
            if database.name in prepared:
                continue
            prepared.add(database.name)
            target = database[target_name]

            merges_into_source = resolver.is_self_copy(databases, CollectionMapping(target_name, target_name)) and \
                target_name in {mapping.source for mapping in resolver.resolve_collections(databases.source)}
            if options.drop_target_first and merges_into_source:
                logger.warning(f"Not dropping merge target {target.full_name}, it is also a source collection")
            elif options.drop_target_first:
                try:
                    target.drop()
                except PyMongoError as e:
                    logger.error(f"Failed to drop merge target {target.full_name}, aborting copy job: {e}")
                    raise
                logger.info(f"Merge target dropped: {target.full_name}")

            if options.creation_options.has_options() and not collection_exists(database, target_name):
                create_target_collection(target, options.creation_options)

        return replace(options, drop_target_first=False, creation_options=CollectionCreationOptions())

    def run(self) -> JobSummary:
        """Resolve every mapping, copy them and return the job summary"""
        errors = validate_options(self.config.selection, self.config.options)
        if errors:
            raise ConfigurationError("; ".join(errors))

        resolver = Resolver(self.source_client, self.target_client, self.config.selection,
                            same_server=self.same_server)
        options = self._prepare_merge_targets(resolver)

        logger.info(f"🚀 Starting copy job with {self.config.threads} thread(s)")
        self.progress_bar = tqdm(desc="📦 Copying collections", unit="coll",
                                 disable=not self.config.show_progress, leave=True)
        scheduler = TaskScheduler(self._handle, workers=self.config.threads,
                                  queue_size=self.config.queue_size, on_result=self._on_result)
        try:
            with scheduler:
                for task in resolver.iter_tasks(options):
                    logger.debug(f"Queueing {task}")
                    scheduler.add_task(task)
        finally:
            self.progress_bar.close()
            self.progress_bar = None

        summary = self.metrics_collector.build_summary()
        rate = self.metrics_collector.get_summary()["average_rate"]
        logger.info(f"📊 Copy job finished: {summary.completed} completed, {summary.skipped} skipped, "
                    f"{summary.failed} failed, {summary.documents_copied:,} documents in "
                    f"{summary.elapsed_seconds:.1f}s ({rate:.0f} docs/s)")
        if resolver.skipped_self_copies:
            logger.warning(f"{resolver.skipped_self_copies} collection(s) skipped to avoid copying onto themselves")
        for name in summary.failed_collections:
            logger.error(f"❌ Failed: {name}")
        return summary


def create_migration_engine(config: JobConfig, source_client, target_client,
                            same_server: Optional[bool] = None) -> MigrationEngine:
    """Create a migration engine for the given configuration and connected clients"""
    return MigrationEngine(config, source_client, target_client, same_server=same_server)
