# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Cache metrics and batch telemetry.

This module provides:
- CacheMetrics: hit/miss counters and timing with a derived hit ratio.
  The same shape is reported by the file-processing and layout call sites.
- MetricsRecorder: appends one JSONL record per batch to
  {data_root}/batch_metrics/YYYY-MM-DD-<session>.jsonl
- read_batch_metrics: reads those records back for analysis and tests
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from incremental_cache.log_config import build_log_filename, get_batch_metrics_dir

logger = logging.getLogger(__name__)


@dataclass
class CacheMetrics:
    """Plain counters for one pass (or accumulated across passes).

    items_processed counts successful recomputations; cache_misses counts
    every item that needed processing, including failed ones.
    """

    items_processed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    items_removed: int = 0
    errors: int = 0
    total_processing_time_ms: float = 0.0

    @property
    def hit_ratio(self) -> float:
        """hits / (hits + misses), or 0.0 before any lookup."""
        lookups = self.cache_hits + self.cache_misses
        if lookups == 0:
            return 0.0
        return self.cache_hits / lookups

    @property
    def average_processing_time_ms(self) -> float:
        if self.items_processed == 0:
            return 0.0
        return self.total_processing_time_ms / self.items_processed

    def record_hit(self) -> None:
        self.cache_hits += 1

    def record_miss(self, processing_time_ms: float) -> None:
        self.cache_misses += 1
        self.items_processed += 1
        self.total_processing_time_ms += processing_time_ms

    def record_failure(self, processing_time_ms: float = 0.0) -> None:
        self.cache_misses += 1
        self.errors += 1
        self.total_processing_time_ms += processing_time_ms

    def record_removal(self) -> None:
        self.items_removed += 1

    def merge(self, other: "CacheMetrics") -> None:
        """Add another set of counters into this one."""
        self.items_processed += other.items_processed
        self.cache_hits += other.cache_hits
        self.cache_misses += other.cache_misses
        self.items_removed += other.items_removed
        self.errors += other.errors
        self.total_processing_time_ms += other.total_processing_time_ms

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "items_processed": self.items_processed,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "items_removed": self.items_removed,
            "errors": self.errors,
            "total_processing_time_ms": round(self.total_processing_time_ms, 3),
            "average_processing_time_ms": round(self.average_processing_time_ms, 3),
            "hit_ratio": round(self.hit_ratio, 4),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheMetrics":
        """Deserialize counters; derived fields are ignored."""
        return cls(
            items_processed=int(data.get("items_processed", 0)),
            cache_hits=int(data.get("cache_hits", 0)),
            cache_misses=int(data.get("cache_misses", 0)),
            items_removed=int(data.get("items_removed", 0)),
            errors=int(data.get("errors", 0)),
            total_processing_time_ms=float(data.get("total_processing_time_ms", 0.0)),
        )


class MetricsRecorder:
    """Appends per-batch metrics to a date-session JSONL file.

    Usage:
        recorder = MetricsRecorder(data_root=Path("~/.incremental_cache").expanduser())
        recorder.record("files", batch_result.metrics)
    """

    def __init__(
        self,
        data_root: Optional[Path] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Initialize the recorder.

        Args:
            data_root: Data root directory. If None, uses the default root.
            session_id: Optional session ID. If None, generates a UUID.

        Raises:
            ValueError: If session_id is not a safe filename component.
        """
        self._session_id = session_id or str(uuid.uuid4())
        self._log_dir = get_batch_metrics_dir(data_root)
        self._log_path = self._log_dir / build_log_filename(self._session_id)
        self._records_written = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def log_path(self) -> Path:
        return self._log_path

    @property
    def records_written(self) -> int:
        return self._records_written

    def record(self, site: str, metrics: Dict[str, Any]) -> Dict[str, Any]:
        """Append one batch record.

        Args:
            site: Call site name ("files" or "layout").
            metrics: Metrics dict, typically BatchResult.metrics.

        Returns:
            The record that was written.
        """
        entry = {
            "session_id": self._session_id,
            "site": site,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "metrics": metrics,
        }
        self._log_dir.mkdir(parents=True, exist_ok=True)
        with open(self._log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, separators=(",", ":")) + "\n")
        self._records_written += 1
        logger.debug(f"Batch metrics for {site} written to {self._log_path}")
        return entry


def read_batch_metrics(log_path: Path, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Read batch metric records from a JSONL file.

    Args:
        log_path: Path to a batch metrics file.
        limit: Optional maximum number of records to return.

    Returns:
        List of records, oldest first. Empty if the file does not exist.
    """
    if not log_path.exists():
        return []

    records: List[Dict[str, Any]] = []
    with open(log_path, encoding="utf-8") as f:
        for line in f:
            if limit is not None and len(records) >= limit:
                break
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping malformed metrics line in {log_path}: {e}")
                continue
            if isinstance(data, dict):
                records.append(data)

    return records
