# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared fixtures for integration tests.

Provides a representative static-site project and a service factory.
"""

from pathlib import Path
from typing import Callable

import pytest

from incremental_cache.config import Config
from incremental_cache.service import IncrementalCacheService


@pytest.fixture
def sample_site(tmp_path: Path) -> Path:
    """Create a representative static site for integration testing.

    Creates a project with:
    - An HTML page referencing a stylesheet, a script and a document
    - A CSS @import chain
    - A JavaScript module import
    - Two Markdown documents linking to each other (a cycle)
    - A standalone README

    Returns:
        Path to the project root directory
    """
    root = tmp_path / "sample_site"
    for sub in ("css", "js", "docs"):
        (root / sub).mkdir(parents=True)

    (root / "index.html").write_text(
        """<!doctype html>
<html>
  <head><link rel="stylesheet" href="css/site.css"></head>
  <body>
    <a href="docs/guide.md">Guide</a>
    <a href="https://example.com">External</a>
    <script src="js/app.js"></script>
  </body>
</html>
"""
    )
    (root / "css" / "site.css").write_text('@import "theme.css";\nmain { padding: 1rem; }\n')
    (root / "css" / "theme.css").write_text("body { color: #222; }\n")
    (root / "js" / "app.js").write_text(
        "import { greet } from './util.js';\nimport React from 'react';\ngreet();\n"
    )
    (root / "js" / "util.js").write_text("export function greet() { return 'hi'; }\n")
    (root / "docs" / "guide.md").write_text("# Guide\nSee the [FAQ](faq.md).\n")
    (root / "docs" / "faq.md").write_text("# FAQ\nBack to the [guide](guide.md#top).\n")
    (root / "README.md").write_text("# Sample site\n")

    return root


@pytest.fixture
def make_service(tmp_path: Path) -> Callable[[Path], IncrementalCacheService]:
    """Factory building a service over a project, sharing one data root per test."""

    def factory(project_root: Path) -> IncrementalCacheService:
        return IncrementalCacheService(
            Config(config_path=project_root / ".incremental_cache.yml"),
            project_root=str(project_root),
            session_id="integration",
            data_root=tmp_path / "data",
        )

    return factory
