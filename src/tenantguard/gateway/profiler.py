"""In-memory query profiling.

QueryProfiler keeps the most recent query metrics in a bounded ring buffer,
warns about slow statements, and derives simple per-tenant performance
reports with index suggestions. Each gateway owns one profiler instance.
"""

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from ..isolation.exceptions import sql_excerpt
from ..isolation.lexer import code_view

logger = logging.getLogger(__name__)

_WHERE_COLUMN_RE = re.compile(r"\bwhere\s+(?:\w+\.)?(\w+)\s*=", re.IGNORECASE)
_ORDER_COLUMN_RE = re.compile(r"\border\s+by\s+(?:\w+\.)?(\w+)", re.IGNORECASE)
_TABLE_RE = re.compile(r"\b(?:from|update|into)\s+(?:only\s+)?(\w+)", re.IGNORECASE)


@dataclass(frozen=True)
class QueryMetrics:
    """Timing of one executed statement."""

    query: str
    execution_time_ms: float
    row_count: int
    tenant_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "execution_time_ms": self.execution_time_ms,
            "row_count": self.row_count,
            "tenant_id": self.tenant_id,
            "timestamp": self.timestamp.isoformat(),
            "request_id": self.request_id,
        }


@dataclass
class PerformanceReport:
    """Aggregate view of recorded metrics.

    Attributes:
        slow_queries: Metrics slower than the analysis threshold.
        average_execution_time_ms: Mean over all considered metrics.
        total_queries: Number of metrics considered.
        suggested_indexes: CREATE INDEX statements worth reviewing.
    """

    slow_queries: List[QueryMetrics]
    average_execution_time_ms: float
    total_queries: int
    suggested_indexes: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slowQueries": [m.to_dict() for m in self.slow_queries],
            "averageExecutionTime": self.average_execution_time_ms,
            "totalQueries": self.total_queries,
            "suggestedIndexes": list(self.suggested_indexes),
        }


class QueryProfiler:
    """Bounded, thread-safe store of recent query metrics.

    Args:
        capacity: Maximum metrics retained; oldest entries are evicted first.
        slow_query_threshold_ms: Statements slower than this are logged at
            WARNING when recorded.
        analysis_slow_threshold_ms: Statements slower than this are listed
            in performance reports.
    """

    def __init__(
        self,
        capacity: int = 1000,
        slow_query_threshold_ms: float = 1000.0,
        analysis_slow_threshold_ms: float = 500.0,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.analysis_slow_threshold_ms = analysis_slow_threshold_ms
        self._metrics: Deque[QueryMetrics] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._metrics)

    def log_query(self, metrics: QueryMetrics) -> None:
        with self._lock:
            self._metrics.append(metrics)

        if metrics.execution_time_ms > self.slow_query_threshold_ms:
            logger.warning(
                f"Slow query detected ({metrics.execution_time_ms:.1f}ms) "
                f"for tenant {metrics.tenant_id}: {sql_excerpt(metrics.query)}"
            )

    def get_metrics(self, tenant_id: Optional[str] = None) -> List[QueryMetrics]:
        with self._lock:
            metrics = list(self._metrics)
        if tenant_id is None:
            return metrics
        return [m for m in metrics if m.tenant_id == tenant_id]

    def clear_metrics(self, tenant_id: Optional[str] = None) -> int:
        """Drop metrics for one tenant, or all metrics.

        Returns:
            Number of metrics removed.
        """
        with self._lock:
            before = len(self._metrics)
            if tenant_id is None:
                self._metrics.clear()
            else:
                kept = [m for m in self._metrics if m.tenant_id != tenant_id]
                self._metrics.clear()
                self._metrics.extend(kept)
            return before - len(self._metrics)

    def analyze_performance(self, tenant_id: Optional[str] = None) -> PerformanceReport:
        metrics = self.get_metrics(tenant_id)
        slow = [m for m in metrics if m.execution_time_ms > self.analysis_slow_threshold_ms]
        average = (
            sum(m.execution_time_ms for m in metrics) / len(metrics) if metrics else 0.0
        )
        return PerformanceReport(
            slow_queries=slow,
            average_execution_time_ms=average,
            total_queries=len(metrics),
            suggested_indexes=self._suggest_indexes(slow),
        )

    def get_index_suggestions(
        self, tenant_id: Optional[str] = None, table_prefix: Optional[str] = None
    ) -> List[str]:
        """Index suggestions for slow queries, optionally limited to tables
        starting with ``table_prefix``."""
        suggestions = self.analyze_performance(tenant_id).suggested_indexes
        if not table_prefix:
            return suggestions
        return [s for s in suggestions if f" ON {table_prefix}" in s]

    @staticmethod
    def _suggest_indexes(metrics: List[QueryMetrics]) -> List[str]:
        suggestions: Dict[str, None] = {}
        for m in metrics:
            code = code_view(m.query)
            table_match = _TABLE_RE.search(code)
            if table_match is None:
                continue
            table = table_match.group(1).lower()
            for pattern in (_WHERE_COLUMN_RE, _ORDER_COLUMN_RE):
                column_match = pattern.search(code)
                if column_match is None:
                    continue
                column = column_match.group(1).lower()
                if column == "tenant_id":
                    statement = (
                        f"CREATE INDEX IF NOT EXISTS idx_{table}_tenant_id "
                        f"ON {table}(tenant_id);"
                    )
                else:
                    statement = (
                        f"CREATE INDEX IF NOT EXISTS idx_{table}_tenant_id_{column} "
                        f"ON {table}(tenant_id, {column});"
                    )
                suggestions[statement] = None
        return list(suggestions)
