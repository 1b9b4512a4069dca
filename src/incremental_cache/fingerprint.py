# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Fingerprinting for change detection.

A fingerprint is a pair of hashes:
- content_hash: SHA-256 of the item's raw content
- meta_hash: cheap hash of size + modification time (or an equivalent
  change indicator for non-file items)

Both hashes are recomputed on every check. If an item cannot be read
(deleted, permission error), fingerprint() returns None instead of raising,
so callers can classify the item as deleted.

Implementations:
- FileFingerprinter: items are file paths on disk
- MappingFingerprinter: items are in-memory values (e.g. layout node props)
"""

import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional

from incremental_cache.models import Fingerprint

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 8192


def hash_value(value: Any) -> str:
    """SHA-256 of a JSON-compatible value using canonical key ordering."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class Fingerprinter(ABC):
    """Derives a stable identity for items and loads their content."""

    @abstractmethod
    def fingerprint(self, item_id: str) -> Optional[Fingerprint]:
        """Fingerprint an item.

        Args:
            item_id: Item identifier.

        Returns:
            Fingerprint, or None if the item is absent or unreadable.
        """
        pass

    @abstractmethod
    def read(self, item_id: str) -> Any:
        """Load the item's content for the compute step.

        Raises:
            Exception: If the item cannot be read.
        """
        pass


class FileFingerprinter(Fingerprinter):
    """Fingerprints files on disk.

    Items are file paths. Content is decoded as UTF-8 text for the compute
    step; hashing always works on raw bytes.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def fingerprint(self, item_id: str) -> Optional[Fingerprint]:
        try:
            stats = os.stat(item_id)
            hasher = hashlib.sha256()
            with open(item_id, "rb") as f:
                for chunk in iter(lambda: f.read(_READ_CHUNK_SIZE), b""):
                    hasher.update(chunk)
        except (FileNotFoundError, PermissionError, IsADirectoryError, NotADirectoryError):
            return None
        except OSError as e:
            logger.debug(f"Cannot fingerprint {item_id}: {e}")
            return None

        meta = f"{stats.st_mtime_ns}-{stats.st_size}"
        return Fingerprint(
            content_hash=hasher.hexdigest(),
            meta_hash=hashlib.md5(meta.encode("utf-8")).hexdigest(),
            size=stats.st_size,
            mtime=stats.st_mtime,
        )

    def read(self, item_id: str) -> str:
        with open(item_id, encoding=self.encoding) as f:
            return f.read()


class MappingFingerprinter(Fingerprinter):
    """Fingerprints in-memory values held in a mapping.

    Absent keys fingerprint as None (deleted). The meta hash defaults to the
    hash of the value's type name and can be replaced by a caller-supplied
    change indicator, e.g. a layout node's ordered child ids.

    Usage:
        fingerprinter = MappingFingerprinter({"root": {"width": 80}})
        fingerprinter.fingerprint("root")
    """

    def __init__(
        self,
        items: Optional[Mapping[str, Any]] = None,
        meta_of: Optional[Callable[[str, Any], Any]] = None,
    ) -> None:
        self._items: Dict[str, Any] = dict(items or {})
        self._meta_of = meta_of

    def set(self, item_id: str, value: Any) -> None:
        self._items[item_id] = value

    def remove(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    def replace_all(self, items: Mapping[str, Any]) -> None:
        self._items = dict(items)

    def fingerprint(self, item_id: str) -> Optional[Fingerprint]:
        if item_id not in self._items:
            return None
        value = self._items[item_id]
        try:
            content_hash = hash_value(value)
            if self._meta_of is not None:
                meta_hash = hash_value(self._meta_of(item_id, value))
            else:
                meta_hash = hash_value(type(value).__name__)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cannot fingerprint in-memory item {item_id}: {e}")
            return None
        return Fingerprint(content_hash=content_hash, meta_hash=meta_hash)

    def read(self, item_id: str) -> Any:
        return self._items[item_id]
