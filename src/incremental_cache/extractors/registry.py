# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Registry for dependency extractor plugins.

Dispatches items to extractors by file suffix (tagged-variant dispatch keyed
by item type). An item with no matching extractor has no dependencies.
"""

import logging
import os
from typing import Dict, List, Optional, Set

from .base import DependencyExtractor

logger = logging.getLogger(__name__)


class ExtractorRegistry:
    """Suffix-keyed registry of dependency extractors.

    Registering an extractor for a suffix that is already taken replaces the
    previous extractor for that suffix.

    Thread Safety:
    - NOT thread-safe: register all extractors before processing
    """

    def __init__(self) -> None:
        """Initialize empty extractor registry."""
        self._by_suffix: Dict[str, DependencyExtractor] = {}
        self._extractors: List[DependencyExtractor] = []

    def register(self, extractor: DependencyExtractor) -> None:
        """Register an extractor plugin.

        Raises:
            TypeError: If extractor is not a DependencyExtractor instance.
        """
        if not isinstance(extractor, DependencyExtractor):
            raise TypeError(
                f"Extractor must be a DependencyExtractor instance, got {type(extractor)}"
            )

        self._extractors.append(extractor)
        for suffix in extractor.suffixes():
            previous = self._by_suffix.get(suffix.lower())
            if previous is not None and previous is not extractor:
                logger.debug(
                    f"Extractor '{extractor.name()}' replaces '{previous.name()}' for {suffix}"
                )
            self._by_suffix[suffix.lower()] = extractor

        logger.debug(
            f"Registered extractor '{extractor.name()}' for {', '.join(extractor.suffixes())}"
        )

    def extractor_for(self, item_id: str) -> Optional[DependencyExtractor]:
        """Extractor responsible for an item, by its file suffix."""
        suffix = os.path.splitext(item_id)[1].lower()
        return self._by_suffix.get(suffix)

    def supported_suffixes(self) -> List[str]:
        return sorted(self._by_suffix)

    def extract_for(self, item_id: str, content: str) -> Set[str]:
        """Extract dependencies of an item, resolving against its directory.

        Returns:
            Resolved dependency ids, excluding the item itself.
        """
        extractor = self.extractor_for(item_id)
        if extractor is None or not isinstance(content, str):
            return set()
        dependencies = extractor.extract(content, os.path.dirname(item_id))
        dependencies.discard(item_id)
        return dependencies

    def clear(self) -> None:
        """Remove all registered extractors."""
        self._by_suffix.clear()
        self._extractors.clear()

    def count(self) -> int:
        """Return number of registered extractors."""
        return len(self._extractors)
