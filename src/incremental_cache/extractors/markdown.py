# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Markdown dependency extractor: image and link targets."""

import re
from typing import Set, Tuple

from .base import DependencyExtractor, resolve_reference

# ![alt](target "title") and [text](target "title"); image syntax is a superset
_LINK_PATTERN = re.compile(r"!?\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+[\"'][^)]*[\"'])?\s*\)")


class MarkdownExtractor(DependencyExtractor):
    """Extracts local image and link targets from Markdown.

    URLs (http, https, mailto) and in-page anchors are ignored.
    """

    def extract(self, content: str, base_path: str) -> Set[str]:
        dependencies: Set[str] = set()
        for match in _LINK_PATTERN.finditer(content):
            resolved = resolve_reference(match.group(1), base_path)
            if resolved is not None:
                dependencies.add(resolved)
        return dependencies

    def suffixes(self) -> Tuple[str, ...]:
        return (".md", ".markdown")

    def name(self) -> str:
        return "MarkdownExtractor"
