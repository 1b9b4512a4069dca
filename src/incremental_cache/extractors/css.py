# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""CSS dependency extractor: @import rules."""

import re
from typing import Set, Tuple

from .base import DependencyExtractor, resolve_reference

# @import "x"; @import 'x'; @import url(x); @import url("x")
_IMPORT_PATTERN = re.compile(
    r"""@import\s+(?:url\(\s*["']?([^"')\s]+)["']?\s*\)|["']([^"']+)["'])""",
    re.IGNORECASE,
)


class CssExtractor(DependencyExtractor):
    """Extracts @import targets from CSS, SCSS and Less sources."""

    def extract(self, content: str, base_path: str) -> Set[str]:
        dependencies: Set[str] = set()
        for match in _IMPORT_PATTERN.finditer(content):
            reference = match.group(1) or match.group(2)
            resolved = resolve_reference(reference, base_path)
            if resolved is not None:
                dependencies.add(resolved)
        return dependencies

    def suffixes(self) -> Tuple[str, ...]:
        return (".css", ".scss", ".less")

    def name(self) -> str:
        return "CssExtractor"
