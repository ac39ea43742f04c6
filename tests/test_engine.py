"""
Unit tests for the collection copy pipeline and the job runner.
"""

from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
from pymongo.errors import AutoReconnect, BulkWriteError, OperationFailure

from mongocopy import (
    CollectionCreationOptions,
    ConfigurationError,
    CopyResult,
    CopySelection,
    CopyStatus,
    JobConfig,
    MetricsCollector,
)
from mongocopy.migrations import engine as engine_module
from mongocopy.migrations.engine import (
    FALLBACK_BATCH_SIZE,
    CollectionCopyEngine,
    MigrationEngine,
    compute_batch_size,
)


@pytest.fixture
def copier(sleeps):
    return CollectionCopyEngine(sleep=sleeps.append)


def ids(collection):
    return sorted(doc["_id"] for doc in collection.find())


class TestBatchSize:

    @pytest.mark.parametrize("avg_obj_size, expected", [
        (40000, 105),
        (1000, 200),
        (4 * 1024 * 1024, 2),
        (0, FALLBACK_BATCH_SIZE),
        (None, FALLBACK_BATCH_SIZE),
    ])
    def test_compute_batch_size(self, avg_obj_size, expected):
        assert compute_batch_size(avg_obj_size) == expected

    def test_explicit_batch_size_wins(self, copier, seeded_source):
        assert copier._resolve_batch_size("shop.users", seeded_source["users"], 7) == 7

    def test_statistics_failure_falls_back(self, copier, seeded_source):
        with patch.object(engine_module, "average_document_size", side_effect=OperationFailure("denied")):
            size = copier._resolve_batch_size("shop.users", seeded_source["users"], -1)

        assert size == FALLBACK_BATCH_SIZE


class TestCollectionCopy:

    def test_full_copy(self, copier, seeded_source, target_db, fast_options):
        result = copier.copy(seeded_source, target_db, "orders", options=fast_options)

        assert result.status is CopyStatus.COMPLETED
        assert result.documents_copied == 25
        assert result.target == "shop_backup.orders"
        assert ids(target_db["orders"]) == list(range(1, 26))

    def test_copy_to_renamed_collection(self, copier, seeded_source, target_db, fast_options):
        result = copier.copy(seeded_source, target_db, "users", "people", fast_options)

        assert result.status is CopyStatus.COMPLETED
        assert target_db["people"].count_documents({}) == 10

    def test_missing_source_is_skipped(self, copier, seeded_source, target_db, fast_options):
        result = copier.copy(seeded_source, target_db, "invoices", options=fast_options)

        assert result.status is CopyStatus.SKIPPED
        assert "invoices" not in target_db.list_collection_names()

    def test_system_collection_is_skipped(self, copier, seeded_source, target_db, fast_options):
        result = copier.copy(seeded_source, target_db, "system.views", options=fast_options)

        assert result.status is CopyStatus.SKIPPED

    def test_capped_collection_is_skipped(self, copier, fast_options):
        source = MagicMock()
        source.name = "logs_db"
        source.list_collection_names.return_value = ["events"]
        source.list_collections.return_value = iter([{"name": "events", "options": {"capped": True, "size": 4096}}])
        target = MagicMock()
        target.name = "logs_copy"

        result = copier.copy(source, target, "events", options=fast_options)

        assert result.status is CopyStatus.SKIPPED
        assert result.reason == "capped collection"
        target.__getitem__.return_value.insert_many.assert_not_called()

    def test_skip_existing_reads_nothing(self, copier, seeded_source, target_db, fast_options):
        target_db["users"].insert_one({"_id": 1})
        options = replace(fast_options, skip_existing=True)

        with patch.object(engine_module, "SafeCursor") as cursor:
            result = copier.copy(seeded_source, target_db, "users", options=options)

        assert result.status is CopyStatus.SKIPPED
        cursor.assert_not_called()
        assert target_db["users"].count_documents({}) == 1

    def test_skip_existing_copies_into_empty_target(self, copier, seeded_source, target_db, fast_options):
        target_db.create_collection("users")
        options = replace(fast_options, skip_existing=True)

        result = copier.copy(seeded_source, target_db, "users", options=options)

        assert result.status is CopyStatus.COMPLETED
        assert result.documents_copied == 10

    def test_resume_copies_only_the_remainder(self, copier, seeded_source, target_db, fast_options):
        target_db["orders"].insert_many([{"_id": i, "total": i * 10} for i in range(1, 11)])
        options = replace(fast_options, resume=True)

        result = copier.copy(seeded_source, target_db, "orders", options=options)

        assert result.status is CopyStatus.COMPLETED
        assert result.documents_copied == 15
        assert ids(target_db["orders"]) == list(range(1, 26))

    def test_resume_does_not_drop(self, copier, seeded_source, target_db, fast_options):
        target_db["orders"].insert_many([{"_id": i} for i in range(1, 6)])
        options = replace(fast_options, resume=True, drop_target_first=True)

        result = copier.copy(seeded_source, target_db, "orders", options=options)

        assert result.documents_copied == 20
        assert target_db["orders"].count_documents({}) == 25

    def test_if_smaller_skips_equal_target(self, copier, seeded_source, target_db, fast_options):
        target_db["users"].insert_many([{"_id": i} for i in range(1, 11)])
        options = replace(fast_options, if_smaller=True)

        result = copier.copy(seeded_source, target_db, "users", options=options)

        assert result.status is CopyStatus.SKIPPED
        assert result.reason == "target not smaller"

    def test_if_smaller_copies_smaller_target(self, copier, seeded_source, target_db, fast_options):
        target_db["users"].insert_many([{"_id": i} for i in range(1, 4)])
        options = replace(fast_options, if_smaller=True, drop_target_first=True)

        result = copier.copy(seeded_source, target_db, "users", options=options)

        assert result.status is CopyStatus.COMPLETED
        assert target_db["users"].count_documents({}) == 10

    def test_drop_target_first(self, copier, seeded_source, target_db, fast_options):
        target_db["users"].insert_one({"_id": 100, "name": "stale"})
        options = replace(fast_options, drop_target_first=True)

        copier.copy(seeded_source, target_db, "users", options=options)

        assert ids(target_db["users"]) == list(range(1, 11))

    def test_drop_failure_aborts(self, copier, seeded_source, target_db, fast_options):
        target_db["users"].insert_one({"_id": 100})
        options = replace(fast_options, drop_target_first=True)

        with patch("mongomock.collection.Collection.drop", side_effect=OperationFailure("not authorized")):
            result = copier.copy(seeded_source, target_db, "users", options=options)

        assert result.status is CopyStatus.FAILED
        assert result.reason.startswith("drop failed")
        assert ids(target_db["users"]) == [100]

    def test_creation_options_recreate_empty_target(self, copier, seeded_source, target_db, fast_options):
        target_db.create_collection("users")
        creation = CollectionCreationOptions(block_compressor="zlib")
        options = replace(fast_options, creation_options=creation)

        with patch.object(engine_module, "create_target_collection") as create:
            result = copier.copy(seeded_source, target_db, "users", options=options)

        create.assert_called_once()
        assert create.call_args[0][1] == creation
        assert result.documents_copied == 10

    def test_creation_options_ignored_for_populated_target(self, copier, seeded_source, target_db, fast_options):
        target_db["users"].insert_one({"_id": 100})
        options = replace(fast_options, creation_options=CollectionCreationOptions(allocation="2x"))

        with patch.object(engine_module, "create_target_collection") as create:
            copier.copy(seeded_source, target_db, "users", options=options)

        create.assert_not_called()
        assert target_db["users"].count_documents({}) == 11

    def test_lazy_wait_between_full_batches(self, copier, sleeps, seeded_source, target_db, fast_options):
        options = replace(fast_options, lazy_wait_ms=250)

        copier.copy(seeded_source, target_db, "users", options=options)

        # 10 documents in batches of 3: three full batches and a final partial one
        assert sleeps == [0.25, 0.25, 0.25]

    def test_indexes_copied_after_data(self, copier, seeded_source, target_db, fast_options):
        options = replace(fast_options, copy_indexes=True)

        with patch.object(engine_module, "IndexTranslator") as translator:
            copier.copy(seeded_source, target_db, "users", options=options)

        translator.return_value.recreate.assert_called_once()

    def test_no_indexes_when_disabled(self, copier, seeded_source, target_db, fast_options):
        with patch.object(engine_module, "IndexTranslator") as translator:
            copier.copy(seeded_source, target_db, "users", options=fast_options)

        translator.return_value.recreate.assert_not_called()

    @pytest.mark.parametrize("copy_indexes", [True, False])
    def test_indexes_before_data_only_once(self, copier, seeded_source, target_db, fast_options, copy_indexes):
        options = replace(fast_options, indexes_before=True, copy_indexes=copy_indexes)
        target_sizes = []

        with patch.object(engine_module, "IndexTranslator") as translator:
            translator.return_value.recreate.side_effect = \
                lambda source, target: target_sizes.append(target.count_documents({}))
            result = copier.copy(seeded_source, target_db, "users", options=options)

        assert result.documents_copied == 10
        assert target_sizes == [0]

    def test_operation_recorded_in_metrics(self, sleeps, seeded_source, target_db, fast_options):
        metrics = MetricsCollector()
        copier = CollectionCopyEngine(metrics, sleep=sleeps.append)

        copier.copy(seeded_source, target_db, "users", options=fast_options)

        operation = metrics.operations["shop.users -> shop_backup.users"]
        assert operation.success
        assert operation.documents_processed == 10


class TestBatchWrites:

    def test_failed_batch_is_retried_once(self, copier, sleeps, seeded_source, target_db, fast_options):
        outcomes = [AutoReconnect("primary stepped down"), (3, 0), (3, 0), (3, 0), (1, 0)]

        with patch.object(CollectionCopyEngine, "_insert_batch", side_effect=outcomes) as insert:
            result = copier.copy(seeded_source, target_db, "users", options=fast_options)

        assert result.status is CopyStatus.COMPLETED
        assert result.documents_copied == 10
        assert insert.call_count == 5
        assert sleeps == [0]

    def test_second_failure_fails_the_collection(self, copier, seeded_source, target_db, fast_options):
        with patch.object(CollectionCopyEngine, "_insert_batch",
                          side_effect=AutoReconnect("no primary")) as insert:
            result = copier.copy(seeded_source, target_db, "users", options=fast_options)

        assert result.status is CopyStatus.FAILED
        assert "no primary" in result.reason
        assert insert.call_count == 2

    def test_duplicate_keys_count_as_copied(self):
        target = MagicMock()
        target.insert_many.side_effect = BulkWriteError({
            "writeErrors": [{"index": 0, "code": 11000}, {"index": 2, "code": 11000}],
            "writeConcernErrors": [],
            "nInserted": 3,
        })

        assert CollectionCopyEngine._insert_batch(target, [{"_id": i} for i in range(5)]) == (3, 2)
        assert target.insert_many.call_args.kwargs["ordered"] is False

    def test_other_write_errors_raise(self):
        target = MagicMock()
        target.insert_many.side_effect = BulkWriteError({
            "writeErrors": [{"index": 0, "code": 11000}, {"index": 1, "code": 121}],
            "writeConcernErrors": [],
            "nInserted": 0,
        })

        with pytest.raises(BulkWriteError):
            CollectionCopyEngine._insert_batch(target, [{"_id": 1}, {"_id": 2}])


class StubCopyEngine:
    """Copy engine that fails one collection and completes the others."""

    def __init__(self, failing):
        self.failing = failing

    def copy(self, source_database, target_database, source_name, target_name=None, options=None):
        if source_name == self.failing:
            raise RuntimeError("connection lost")
        return CopyResult(f"{source_database.name}.{source_name}", f"{target_database.name}.{target_name}",
                          CopyStatus.COMPLETED, documents_copied=1)


class TestMigrationEngine:

    def job(self, fast_options, threads=1, **selection):
        return JobConfig(selection=CopySelection(**selection), options=fast_options, threads=threads)

    def test_copies_every_selected_collection(self, client, seeded_source, fast_options):
        config = self.job(fast_options, source_databases=["shop=shop_backup"])

        summary = MigrationEngine(config, client, client, same_server=True).run()

        assert summary.completed == 2
        assert summary.failed == 0
        assert summary.documents_copied == 35
        assert client["shop_backup"]["orders"].count_documents({}) == 25

    def test_self_copies_are_not_queued(self, client, seeded_source, fast_options):
        config = self.job(fast_options, source_databases=["shop"])

        summary = MigrationEngine(config, client, client, same_server=True).run()

        assert summary.total == 0
        assert summary.success

    def merge_job(self, fast_options, **options):
        selection = CopySelection(source_databases=["shop=merged"], collections=["a", "b"], target_collection="all")
        return JobConfig(selection=selection, options=replace(fast_options, **options))

    @pytest.fixture
    def merge_sources(self, client):
        client["shop"]["a"].insert_many([{"_id": i} for i in range(1, 6)])
        client["shop"]["b"].insert_many([{"_id": i} for i in range(101, 106)])
        client["merged"]["all"].insert_one({"_id": 999, "stale": True})

    def test_merge_with_drop_keeps_every_source(self, client, merge_sources, fast_options):
        config = self.merge_job(fast_options, drop_target_first=True)

        summary = MigrationEngine(config, client, client, same_server=True).run()

        merged = client["merged"]["all"]
        assert summary.completed == 2
        assert summary.documents_copied == 10
        assert merged.count_documents({}) == 10
        assert merged.find_one({"_id": 999}) is None

    def test_merge_creates_target_with_storage_options_once(self, client, merge_sources, fast_options):
        creation = CollectionCreationOptions(block_compressor="zlib")
        config = self.merge_job(fast_options, drop_target_first=True, creation_options=creation)

        with patch.object(engine_module, "create_target_collection") as create:
            MigrationEngine(config, client, client, same_server=True).run()

        with_options = [call for call in create.call_args_list if call[0][1].has_options()]
        assert len(with_options) == 1
        assert client["merged"]["all"].count_documents({}) == 10

    def test_merge_into_a_source_collection_never_drops_it(self, client, merge_sources, fast_options):
        selection = CopySelection(source_databases=["shop"], collections=["a", "b"], target_collection="a")
        config = JobConfig(selection=selection, options=replace(fast_options, drop_target_first=True))

        summary = MigrationEngine(config, client, client, same_server=True).run()

        assert summary.completed == 1
        assert client["shop"]["a"].count_documents({}) == 10

    @pytest.mark.parametrize("option", ["resume", "skip_existing", "if_smaller"])
    def test_merge_rejects_per_target_options(self, client, merge_sources, fast_options, option):
        config = self.merge_job(fast_options, **{option: True})

        with pytest.raises(ConfigurationError, match="merging"):
            MigrationEngine(config, client, client, same_server=True).run()

        assert client["merged"]["all"].count_documents({}) == 1

    def test_one_failure_does_not_stop_the_job(self, client, seeded_source, fast_options):
        config = self.job(fast_options, threads=2, source_databases=["shop=shop_backup"])
        engine = MigrationEngine(config, client, client, same_server=True,
                                 copy_engine=StubCopyEngine(failing="orders"))

        summary = engine.run()

        assert summary.completed == 1
        assert summary.failed == 1
        assert summary.failed_collections == ["shop.orders"]
        assert not summary.success
