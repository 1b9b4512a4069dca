# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Core data models for the incremental dependency cache.

This module defines the data structures shared by every component:
- Fingerprint: Content + metadata identity of an item at a point in time
- CacheEntry: Persisted record of an item's last successful computation
- StalenessReason: Enum-like class for dirty-set reason codes
- StalenessCheck: Verdict returned by the invalidation tracker
- ItemOutcome / ItemError: Per-item results reported by the scheduler
- BatchResult: Aggregate result of one scheduling pass
- ProcessOptions: Caller options for a scheduling pass

All persisted models use JSON-compatible primitives for serialization.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class StalenessReason:
    """Reason codes attached to dirty items.

    Design: Using class constants (not Enum) for JSON-compatible strings.
    """

    NEW = "new"  # No CacheEntry exists yet
    DELETED = "deleted"  # Underlying source no longer exists
    CONTENT_CHANGED = "content-changed"
    METADATA_CHANGED = "metadata-changed"
    DEPENDENCY_CHANGED_PREFIX = "dependency-changed:"
    UP_TO_DATE = "up-to-date"  # Served from cache
    FORCED = "forced"  # ProcessOptions.force bypassed the check

    @classmethod
    def dependency_changed(cls, dependency_id: str) -> str:
        """Build the reason code for a stale dependency."""
        return f"{cls.DEPENDENCY_CHANGED_PREFIX}{dependency_id}"

    @classmethod
    def changed_dependency(cls, reason: str) -> Optional[str]:
        """Return the dependency id encoded in a reason code, if any."""
        if reason.startswith(cls.DEPENDENCY_CHANGED_PREFIX):
            return reason[len(cls.DEPENDENCY_CHANGED_PREFIX) :]
        return None


def validate_item_id(item_id: str) -> None:
    """Validate an item identifier.

    Args:
        item_id: Identifier to validate.

    Raises:
        ValueError: If the identifier is empty or contains control characters.
    """
    if not isinstance(item_id, str) or not item_id:
        raise ValueError(f"Item id must be a non-empty string, got {item_id!r}")
    # ASCII control characters (0-31) would corrupt the persisted index
    if any(ord(c) < 32 for c in item_id):
        raise ValueError(f"Item id contains invalid control characters: {item_id!r}")


@dataclass(frozen=True)
class Fingerprint:
    """Stable identity of an item.

    content_hash is a cryptographic hash of the raw content; meta_hash is a
    cheap hash of size + modification time (or an equivalent change indicator).
    """

    content_hash: str
    meta_hash: str
    size: Optional[int] = None
    mtime: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "content_hash": self.content_hash,
            "meta_hash": self.meta_hash,
        }
        if self.size is not None:
            result["size"] = self.size
        if self.mtime is not None:
            result["mtime"] = self.mtime
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fingerprint":
        """Deserialize from JSON-compatible dict.

        Raises:
            KeyError: If required fields are missing from data dict.
        """
        return cls(
            content_hash=data["content_hash"],
            meta_hash=data["meta_hash"],
            size=data.get("size"),
            mtime=data.get("mtime"),
        )


@dataclass
class CacheEntry:
    """Persisted record of an item's last successful computation.

    The entry is valid only while its fingerprint matches the item's current
    fingerprint and none of its recorded dependencies are stale.
    """

    item_id: str
    fingerprint: Fingerprint
    result: Any  # Opaque payload returned by the compute step
    dependencies: List[str] = field(default_factory=list)  # Snapshot at compute time
    computed_at: float = 0.0  # Unix timestamp

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict.

        Returns:
            Dictionary with all entry fields. The result payload is stored as-is
            and must itself be JSON-compatible for durable stores.
        """
        return {
            "item_id": self.item_id,
            "fingerprint": self.fingerprint.to_dict(),
            "result": self.result,
            "dependencies": list(self.dependencies),
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        """Deserialize from JSON-compatible dict.

        Raises:
            KeyError: If required fields are missing from data dict.
        """
        return cls(
            item_id=data["item_id"],
            fingerprint=Fingerprint.from_dict(data["fingerprint"]),
            result=data.get("result"),
            dependencies=list(data.get("dependencies", [])),
            computed_at=data.get("computed_at", 0.0),
        )


@dataclass(frozen=True)
class StalenessCheck:
    """Verdict of a staleness check for one item."""

    needed: bool
    reason: str
    fingerprint: Optional[Fingerprint] = None  # None when the item is absent


@dataclass
class ItemOutcome:
    """Per-item outcome reported by the scheduler."""

    item_id: str
    result: Any
    from_cache: bool
    reason: str
    processing_time_ms: float = 0.0
    dependencies: List[str] = field(default_factory=list)

    def to_progress_dict(self) -> Dict[str, Any]:
        """Progress record consumed by outer reporting layers."""
        return {
            "id": self.item_id,
            "fromCache": self.from_cache,
            "reason": self.reason,
            "processingTimeMs": round(self.processing_time_ms, 3),
        }

    def to_dict(self) -> Dict[str, Any]:
        result = self.to_progress_dict()
        result["result"] = self.result
        result["dependencies"] = list(self.dependencies)
        return result


@dataclass
class ItemError:
    """Compute failure (or unknown item) recorded for one item."""

    item_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.item_id, "error": self.error}


ProgressCallback = Callable[[ItemOutcome], None]


@dataclass
class ProcessOptions:
    """Options for one scheduling pass.

    Attributes:
        continue_on_error: Keep processing remaining items after a failure.
        force: Recompute every named item regardless of staleness.
        on_progress: Called with each resolved ItemOutcome, in processing order.
    """

    continue_on_error: bool = False
    force: bool = False
    on_progress: Optional[ProgressCallback] = None


@dataclass
class BatchResult:
    """Aggregate result of IncrementalScheduler.process()."""

    results: List[ItemOutcome] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    cycles: List[Tuple[str, str]] = field(default_factory=list)  # Edges ignored for ordering
    aborted: bool = False

    @property
    def processed_ids(self) -> List[str]:
        """Ids that were recomputed (not served from cache) in this pass."""
        return [
            outcome.item_id
            for outcome in self.results
            if not outcome.from_cache and outcome.reason != StalenessReason.DELETED
        ]

    @property
    def cached_ids(self) -> List[str]:
        """Ids served from cache in this pass."""
        return [outcome.item_id for outcome in self.results if outcome.from_cache]

    def result_for(self, item_id: str) -> Optional[ItemOutcome]:
        for outcome in self.results:
            if outcome.item_id == item_id:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "results": [outcome.to_dict() for outcome in self.results],
            "errors": [error.to_dict() for error in self.errors],
            "metrics": self.metrics,
            "cycles": [list(edge) for edge in self.cycles],
            "aborted": self.aborted,
        }
