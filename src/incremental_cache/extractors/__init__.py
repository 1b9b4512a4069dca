# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Dependency extractor plugins.

Extractors discover what an item references by pattern-matching its content.
They are swappable strategies keyed by file suffix and are entirely
decoupled from the caching core.

Components:
- DependencyExtractor: Abstract base class for extractor plugins
- ExtractorRegistry: Suffix-keyed registry
- MarkdownExtractor: image and link targets
- CssExtractor: @import rules
- JavaScriptExtractor: require(), import() and import ... from
- HtmlExtractor: src and href attributes
"""

from incremental_cache.extractors.base import (
    DependencyExtractor,
    is_external_reference,
    resolve_reference,
)
from incremental_cache.extractors.css import CssExtractor
from incremental_cache.extractors.html import HtmlExtractor
from incremental_cache.extractors.javascript import JavaScriptExtractor
from incremental_cache.extractors.markdown import MarkdownExtractor
from incremental_cache.extractors.registry import ExtractorRegistry


def default_registry() -> ExtractorRegistry:
    """Registry with every built-in extractor registered."""
    registry = ExtractorRegistry()
    registry.register(MarkdownExtractor())
    registry.register(CssExtractor())
    registry.register(JavaScriptExtractor())
    registry.register(HtmlExtractor())
    return registry


__all__ = [
    "DependencyExtractor",
    "ExtractorRegistry",
    "MarkdownExtractor",
    "CssExtractor",
    "JavaScriptExtractor",
    "HtmlExtractor",
    "default_registry",
    "is_external_reference",
    "resolve_reference",
]
