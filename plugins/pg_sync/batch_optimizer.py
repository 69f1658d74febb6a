"""
Batch Optimizer Module

Chooses the number of rows to move per batch for each table, aiming for a
target wall-clock time per batch while never exceeding a memory ceiling.

Policy:
1. No history: start from the initial size, capped by the memory ceiling
   (max_memory_mb / avg_row_size_bytes) and clamped to [min, max]
2. With history: size = target_batch_time_ms / average time per row over the
   last 5 batches; +50% when the last batch took under half the target,
   -25% when it took over 1.5x the target
3. Each recommendation stays within 50%..150% of the previous one for the
   table, then is clamped to [min, max] and finally to the memory ceiling
   (the memory ceiling wins over min_batch_size for very wide rows)

Confidence grows with history: low (<3 batches), medium (<10), high.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional
import json
import logging
import math
import threading

from pg_sync.models import BatchRecommendation, BatchResult, Confidence

logger = logging.getLogger(__name__)

HISTORY_SIZE = 20
RECENT_WINDOW = 5
DEFAULT_ROW_SIZE_BYTES = 1024
BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class BatchConfig:
    min_batch_size: int = 50
    max_batch_size: int = 5000
    target_batch_time_ms: int = 2000
    max_memory_mb: int = 256
    initial_batch_size: int = 100


class BatchOptimizer:
    """
    Per-table adaptive batch sizing.

    One instance is owned by each orchestrator; history is keyed by table
    name and kept in a ring buffer of the last 20 batches.
    """

    def __init__(self, config: Optional[BatchConfig] = None):
        """
        Initialize the batch optimizer.

        Args:
            config: Sizing bounds and targets (defaults match SyncSettings)
        """
        self.config = config or BatchConfig()
        self._history: Dict[str, Deque[BatchResult]] = {}
        self._row_sizes: Dict[str, int] = {}
        self._last_recommendation: Dict[str, int] = {}
        self._lock = threading.Lock()

    def memory_ceiling(self, avg_row_size_bytes: int) -> int:
        """Most rows that fit in max_memory_mb (at least 1)."""
        row_size = max(1, int(avg_row_size_bytes))
        return max(1, (self.config.max_memory_mb * BYTES_PER_MB) // row_size)

    def recommend(
        self,
        table_name: str,
        avg_row_size_bytes: int,
        last_batch_time_ms: Optional[float] = None,
    ) -> BatchRecommendation:
        """
        Recommend the size of the next batch for a table.

        Args:
            table_name: Table being transferred
            avg_row_size_bytes: Current estimate of the average row size
            last_batch_time_ms: Duration of the previous batch (defaults to
                the newest recorded batch for the table)

        Returns:
            BatchRecommendation
        """
        row_size = max(1, int(avg_row_size_bytes or DEFAULT_ROW_SIZE_BYTES))
        ceiling = self.memory_ceiling(row_size)
        config = self.config

        with self._lock:
            self._row_sizes[table_name] = row_size
            history = [r for r in self._history.get(table_name, ()) if r.row_count > 0]

            if not history:
                size = min(config.initial_batch_size, ceiling, config.max_batch_size)
                size = self._clamp(size, ceiling)
                self._last_recommendation[table_name] = size
                return BatchRecommendation(
                    batch_size=size,
                    confidence=Confidence.LOW,
                    reason='Initial batch size based on memory constraints',
                    estimated_time_ms=0.0,
                    estimated_memory_mb=size * row_size / BYTES_PER_MB,
                )

            if last_batch_time_ms is None:
                last_batch_time_ms = history[-1].duration_ms

            recent = history[-RECENT_WINDOW:]
            avg_time_per_row = sum(r.duration_ms / r.row_count for r in recent) / len(recent)

            if avg_time_per_row > 0:
                size = int(config.target_batch_time_ms / avg_time_per_row)
            else:
                size = config.max_batch_size

            if last_batch_time_ms < config.target_batch_time_ms * 0.5:
                size = int(size * 1.5)
            elif last_batch_time_ms > config.target_batch_time_ms * 1.5:
                size = int(size * 0.75)

            previous = self._last_recommendation.get(table_name, history[-1].batch_size)
            size = min(max(size, math.ceil(previous * 0.5)), int(previous * 1.5))
            size = self._clamp(size, ceiling)
            self._last_recommendation[table_name] = size

            return BatchRecommendation(
                batch_size=size,
                confidence=self._confidence(len(self._history.get(table_name, ()))),
                reason=self._reason(last_batch_time_ms),
                estimated_time_ms=size * avg_time_per_row,
                estimated_memory_mb=size * row_size / BYTES_PER_MB,
            )

    def record_result(self, result: BatchResult) -> None:
        """Add a finished batch to the table's history."""
        with self._lock:
            history = self._history.setdefault(result.table_name, deque(maxlen=HISTORY_SIZE))
            history.append(result)
            if result.row_count > 0:
                self._row_sizes[result.table_name] = result.avg_row_size_bytes

    def get_average_row_size(self, table_name: str) -> Optional[int]:
        return self._row_sizes.get(table_name)

    def get_batch_stats(self, table_name: str) -> Optional[Dict[str, float]]:
        """
        Summarize recorded batches for a table.

        Returns:
            Dict with avg_duration_ms, avg_rows_per_second, success_rate and
            total_batches, or None without history
        """
        with self._lock:
            history = list(self._history.get(table_name, ()))

        if not history:
            return None

        total = len(history)
        rates = [r.row_count / (r.duration_ms / 1000) for r in history if r.duration_ms > 0]
        return {
            'avg_duration_ms': sum(r.duration_ms for r in history) / total,
            'avg_rows_per_second': sum(rates) / len(rates) if rates else 0.0,
            'success_rate': sum(1 for r in history if r.success) / total,
            'total_batches': total,
        }

    def clear_history(self, table_name: Optional[str] = None) -> None:
        with self._lock:
            if table_name:
                self._history.pop(table_name, None)
                self._row_sizes.pop(table_name, None)
                self._last_recommendation.pop(table_name, None)
            else:
                self._history.clear()
                self._row_sizes.clear()
                self._last_recommendation.clear()

    @staticmethod
    def estimate_row_size(sample_rows: List[Dict[str, Any]]) -> int:
        """Average serialized size of sample rows (1 KB when there are none)."""
        if not sample_rows:
            return DEFAULT_ROW_SIZE_BYTES
        total = sum(len(json.dumps(row, default=str)) for row in sample_rows)
        return max(1, math.ceil(total / len(sample_rows)))

    def _clamp(self, size: int, ceiling: int) -> int:
        size = max(self.config.min_batch_size, min(size, self.config.max_batch_size))
        return max(1, min(size, ceiling))

    @staticmethod
    def _confidence(samples: int) -> Confidence:
        if samples < 3:
            return Confidence.LOW
        if samples < 10:
            return Confidence.MEDIUM
        return Confidence.HIGH

    def _reason(self, last_batch_time_ms: float) -> str:
        target = self.config.target_batch_time_ms
        if last_batch_time_ms < target * 0.5:
            return 'Increased batch size due to fast processing'
        if last_batch_time_ms > target * 1.5:
            return 'Decreased batch size due to slow processing'
        return 'Optimal batch size for target processing time'
