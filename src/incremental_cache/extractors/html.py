# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""HTML dependency extractor: src and href attributes."""

import re
from typing import Set, Tuple

from .base import DependencyExtractor, resolve_reference

_ATTRIBUTE_PATTERN = re.compile(r"""\b(?:src|href)\s*=\s*["']([^"']+)["']""", re.IGNORECASE)


class HtmlExtractor(DependencyExtractor):
    """Extracts local src/href targets from HTML; external URLs are ignored."""

    def extract(self, content: str, base_path: str) -> Set[str]:
        dependencies: Set[str] = set()
        for match in _ATTRIBUTE_PATTERN.finditer(content):
            resolved = resolve_reference(match.group(1), base_path)
            if resolved is not None:
                dependencies.add(resolved)
        return dependencies

    def suffixes(self) -> Tuple[str, ...]:
        return (".html", ".htm")

    def name(self) -> str:
        return "HtmlExtractor"
