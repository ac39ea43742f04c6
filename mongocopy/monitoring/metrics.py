"""
Monitoring and Metrics
Thread-safe tracking of collection copy operations and the job summary
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class CopyStatus(Enum):
    """How a collection copy ended"""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CopyResult:
    """Outcome of one collection copy"""
    source: str
    target: str
    status: CopyStatus
    documents_copied: int = 0
    documents_skipped: int = 0
    reason: Optional[str] = None


@dataclass
class OperationMetrics:
    """Metrics for a single operation"""
    operation_id: str
    start_time: float
    end_time: Optional[float] = None
    documents_processed: int = 0
    success: bool = False
    error_message: Optional[str] = None

    @property
    def duration(self) -> float:
        if self.end_time is None:
            return time.time() - self.start_time
        return self.end_time - self.start_time

    @property
    def rate(self) -> float:
        return self.documents_processed / self.duration if self.duration > 0 else 0


@dataclass
class JobSummary:
    """Aggregated outcome of a copy job"""
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    documents_copied: int = 0
    documents_skipped: int = 0
    elapsed_seconds: float = 0.0
    memory_usage_mb: float = 0.0
    failed_collections: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.completed + self.skipped + self.failed

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collections": self.total,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "documents_copied": self.documents_copied,
            "documents_skipped": self.documents_skipped,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "memory_usage_mb": round(self.memory_usage_mb, 1),
            "failed_collections": list(self.failed_collections),
        }


class MetricsCollector:
    """
    Metrics collector shared by all copy workers

    - Per collection operation timing
    - Result counts by status
    - Job summary with process memory usage
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.operations: Dict[str, OperationMetrics] = {}
        self.results: List[CopyResult] = []
        self.start_time = time.time()

    def start_operation(self, operation_id: str) -> OperationMetrics:
        """Start tracking an operation"""
        operation = OperationMetrics(operation_id=operation_id, start_time=time.time())
        with self._lock:
            self.operations[operation_id] = operation
        logger.debug(f"Started operation: {operation_id}")
        return operation

    def end_operation(self, operation: OperationMetrics, documents_processed: int,
                      success: bool, error_message: Optional[str] = None):
        """End tracking an operation"""
        operation.end_time = time.time()
        operation.documents_processed = documents_processed
        operation.success = success
        operation.error_message = error_message

        if success:
            logger.debug(f"✅ {operation.operation_id}: {documents_processed:,} docs in "
                         f"{operation.duration:.2f}s ({operation.rate:.0f} docs/s)")
        else:
            logger.debug(f"❌ {operation.operation_id}: Failed - {error_message}")

    def record_result(self, result: CopyResult):
        """Record the outcome of a collection copy"""
        with self._lock:
            self.results.append(result)

    def record_failure(self, source: str, target: str, error: BaseException):
        """Record a task that raised instead of returning a result"""
        self.record_result(CopyResult(source, target, CopyStatus.FAILED, reason=str(error)))

    def build_summary(self) -> JobSummary:
        """Aggregate every recorded result"""
        summary = JobSummary(elapsed_seconds=time.time() - self.start_time)
        with self._lock:
            results = list(self.results)

        for result in results:
            summary.documents_copied += result.documents_copied
            summary.documents_skipped += result.documents_skipped
            if result.status is CopyStatus.COMPLETED:
                summary.completed += 1
            elif result.status is CopyStatus.SKIPPED:
                summary.skipped += 1
            else:
                summary.failed += 1
                summary.failed_collections.append(result.source)

        try:
            summary.memory_usage_mb = psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error:
            summary.memory_usage_mb = 0.0
        return summary

    def get_summary(self) -> Dict[str, Any]:
        """Summary as a plain dictionary"""
        summary = self.build_summary()
        data = summary.to_dict()
        elapsed = summary.elapsed_seconds
        data["average_rate"] = summary.documents_copied / elapsed if elapsed > 0 else 0
        return data
