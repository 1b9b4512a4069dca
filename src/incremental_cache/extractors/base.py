# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Base interface for dependency extractor plugins.

An extractor parses an item's content and returns the ids it references,
resolved against the referencing item's directory. Extractors are keyed by
file suffix and live outside the caching core: the scheduler only consumes
already-resolved dependency ids.
"""

import os
from abc import ABC, abstractmethod
from typing import Optional, Set, Tuple

EXTERNAL_PREFIXES: Tuple[str, ...] = ("http://", "https://", "//", "mailto:", "data:", "tel:")


def is_external_reference(reference: str) -> bool:
    """True for URLs and other references that never name a local file."""
    return reference.lower().startswith(EXTERNAL_PREFIXES)


def resolve_reference(reference: str, base_path: str) -> Optional[str]:
    """Resolve a reference found in content to a dependency id.

    Fragments (#...) and query strings (?...) are dropped. Absolute references
    are kept as-is; relative ones are joined onto base_path and normalized.

    Returns:
        Resolved id, or None for empty, in-page or external references.
    """
    reference = reference.strip()
    if not reference or is_external_reference(reference):
        return None
    reference = reference.split("#", 1)[0].split("?", 1)[0]
    if not reference:
        return None
    if os.path.isabs(reference):
        return reference
    return os.path.normpath(os.path.join(base_path, reference))


class DependencyExtractor(ABC):
    """Abstract base class for dependency extractor plugins.

    Extractors are stateless: extract() may be called for any number of
    items, in any order.
    """

    @abstractmethod
    def extract(self, content: str, base_path: str) -> Set[str]:
        """Extract dependency ids from content.

        Args:
            content: Item content (decoded text).
            base_path: Directory relative references resolve against.

        Returns:
            Set of resolved dependency ids. Empty set if none are found.
        """
        pass

    @abstractmethod
    def suffixes(self) -> Tuple[str, ...]:
        """Lowercase file suffixes (with dot) this extractor handles."""
        pass

    @abstractmethod
    def name(self) -> str:
        """Extractor name for logging and debugging."""
        pass
