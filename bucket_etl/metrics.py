import threading
from collections import deque
from typing import Any, Deque, Dict, List, Protocol

from .models import TickMetrics


class MetricsRecorder(Protocol):
    def record(self, metrics: TickMetrics) -> None:
        ...


class InMemoryMetrics:
    """Keeps the most recent tick metrics per pipeline plus running totals."""

    def __init__(self, history: int = 500):
        self.history = history
        self._recent: Dict[str, Deque[TickMetrics]] = {}
        self._totals: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def record(self, metrics: TickMetrics) -> None:
        with self._lock:
            self._recent.setdefault(metrics.pipeline_id, deque(maxlen=self.history)).append(metrics)
            totals = self._totals.setdefault(
                metrics.pipeline_id,
                {"ticks": 0, "rows_scanned": 0, "rows_written": 0, "transform_errors": 0},
            )
            totals["ticks"] += 1
            totals["rows_scanned"] += metrics.rows_scanned
            totals["rows_written"] += metrics.rows_written
            totals["transform_errors"] += metrics.transform_errors
            key = f"outcome.{metrics.outcome.value}"
            totals[key] = totals.get(key, 0) + 1

    def recent(self, pipeline_id: str, limit: int = 50) -> List[TickMetrics]:
        with self._lock:
            items = list(self._recent.get(pipeline_id, ()))
        return items[-limit:]

    def summary(self, pipeline_id: str) -> Dict[str, Any]:
        with self._lock:
            totals = dict(self._totals.get(pipeline_id, {}))
            recent = self._recent.get(pipeline_id)
            last = recent[-1] if recent else None
        totals["last_outcome"] = last.outcome.value if last else None
        totals["consecutive_failures"] = last.consecutive_failures if last else 0
        return totals
