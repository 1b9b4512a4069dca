# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Incremental Dependency Cache."""

from .config import Config, ConfigurationError
from .extractors import DependencyExtractor, ExtractorRegistry, default_registry
from .file_processing import FileBatchProcessor, summarize_file
from .fingerprint import FileFingerprinter, Fingerprinter, MappingFingerprinter
from .graph import DependencyGraph
from .invalidation import InvalidationTracker
from .layout import LayoutNodeProcessor, flatten_layout_tree
from .metrics import CacheMetrics, MetricsRecorder, read_batch_metrics
from .models import (
    BatchResult,
    CacheEntry,
    Fingerprint,
    ItemError,
    ItemOutcome,
    ProcessOptions,
    StalenessCheck,
    StalenessReason,
)
from .scheduler import IncrementalScheduler
from .service import IncrementalCacheService
from .storage import CacheStore, InMemoryCacheStore, JsonCacheStore

__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "CacheEntry",
    "CacheMetrics",
    "CacheStore",
    "Config",
    "ConfigurationError",
    "DependencyExtractor",
    "DependencyGraph",
    "ExtractorRegistry",
    "FileBatchProcessor",
    "FileFingerprinter",
    "Fingerprint",
    "Fingerprinter",
    "IncrementalCacheService",
    "IncrementalScheduler",
    "InMemoryCacheStore",
    "InvalidationTracker",
    "ItemError",
    "ItemOutcome",
    "JsonCacheStore",
    "LayoutNodeProcessor",
    "MappingFingerprinter",
    "MetricsRecorder",
    "ProcessOptions",
    "StalenessCheck",
    "StalenessReason",
    "default_registry",
    "flatten_layout_tree",
    "read_batch_metrics",
    "summarize_file",
]

# Conditional import for MCP server (requires the mcp package)
try:
    from .mcp_server import IncrementalCacheMCPServer

    __all__.append("IncrementalCacheMCPServer")
except ImportError:
    pass
