# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Integration tests for incremental cache components.

This package contains end-to-end tests that drive the service, scheduler,
stores and extractors together against a real project tree.
"""
