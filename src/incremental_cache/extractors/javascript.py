# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""JavaScript/TypeScript dependency extractor: require(), import() and import ... from."""

import re
from typing import Set, Tuple

from .base import DependencyExtractor, resolve_reference

_CALL_PATTERN = re.compile(r"""\b(?:import|require)\s*\(\s*["']([^"']+)["']\s*\)""")
_STATIC_IMPORT_PATTERN = re.compile(
    r"""\b(?:import|export)\s+(?:[\w*{}\s,$]+\s+from\s+)?["']([^"']+)["']"""
)


class JavaScriptExtractor(DependencyExtractor):
    """Extracts module references from JavaScript and TypeScript sources.

    Only path-like references are dependencies: bare package names
    ("react"), node_modules paths and URLs are skipped.
    """

    def extract(self, content: str, base_path: str) -> Set[str]:
        dependencies: Set[str] = set()
        references = [m.group(1) for m in _CALL_PATTERN.finditer(content)]
        references.extend(m.group(1) for m in _STATIC_IMPORT_PATTERN.finditer(content))

        for reference in references:
            if reference.startswith(("node_modules", "http")):
                continue
            if not reference.startswith((".", "/")):
                # Bare specifier resolved by the package manager
                continue
            resolved = resolve_reference(reference, base_path)
            if resolved is not None:
                dependencies.add(resolved)
        return dependencies

    def suffixes(self) -> Tuple[str, ...]:
        return (".js", ".mjs", ".cjs", ".jsx", ".ts", ".tsx")

    def name(self) -> str:
        return "JavaScriptExtractor"
