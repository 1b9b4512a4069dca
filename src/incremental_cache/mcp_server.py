# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""MCP Server Protocol Layer for the incremental dependency cache.

This module only translates MCP tool calls into IncrementalCacheService
calls. All caching, invalidation and scheduling logic lives in the service
and the processors it owns.
"""

import argparse
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.session import ServerSession

from incremental_cache.config import CONFIG_FILENAME, Config
from incremental_cache.log_config import (
    ensure_log_directories,
    get_default_data_root,
    get_logs_dir,
)
from incremental_cache.logging_setup import setup_logging
from incremental_cache.models import ProcessOptions
from incremental_cache.service import SITE_FILES, IncrementalCacheService

logger = logging.getLogger(__name__)

SERVER_NAME = "incremental-dependency-cache"


class IncrementalCacheMCPServer:
    """MCP Protocol Layer for the incremental dependency cache.

    Responsibilities:
    - Initialize the MCP server and register tools
    - Translate tool invocations into service calls
    - Shape service responses as JSON-compatible tool results
    - Handle server lifecycle (startup, shutdown)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        service: Optional[IncrementalCacheService] = None,
        data_root: Optional[Path] = None,
        session_id: Optional[str] = None,
        project_root: Optional[Path] = None,
    ):
        """Initialize MCP server.

        Args:
            config: Configuration object. If None, loads from the project root.
            service: Service layer instance. If None, creates default service.
            data_root: Root directory for log files. If None, uses ~/.incremental_cache/
            session_id: Session ID for metrics filenames. If None, generates a UUID.
            project_root: Project directory to cache. If None, uses the working directory.
        """
        self.project_root = Path(project_root).resolve() if project_root else Path.cwd()
        if config is None:
            config = Config(self.project_root / CONFIG_FILENAME)
        self.config = config

        self.data_root = data_root or get_default_data_root()
        self.session_id = session_id or str(uuid.uuid4())

        ensure_log_directories(self.data_root)

        if service is None:
            service = IncrementalCacheService(
                config=config,
                project_root=str(self.project_root),
                session_id=self.session_id,
                data_root=self.data_root,
            )
        self.service = service

        self.mcp = FastMCP(name=SERVER_NAME)
        self._register_tools()

        logger.info("IncrementalCacheMCPServer initialized")

    def _register_tools(self) -> None:
        """Register MCP tools with the server.

        Registers:
        - process_files: Run files through the incremental cache
        - get_cache_metrics: Cumulative hit/miss metrics per call site
        - clear_cache: Bust cached entries by glob pattern
        - debug_cache: Cache state snapshot
        """

        @self.mcp.tool()
        async def process_files(
            paths: List[str],
            ctx: Context[ServerSession, None],
            force: bool = False,
            continue_on_error: Optional[bool] = None,
        ) -> Dict[str, Any]:
            """Process files, recomputing only those whose content or dependencies changed.

            Args:
                paths: File paths, absolute or relative to the project root
                ctx: MCP context for logging and progress
                force: Recompute every file regardless of cache state
                continue_on_error: Keep going after a failed file
                    (default: configuration value)

            Returns:
                Dictionary with per-file results, errors, cycles and pass metrics
            """
            await ctx.info(f"Processing {len(paths)} file(s)")

            try:
                options = ProcessOptions(
                    continue_on_error=(
                        self.config.continue_on_error
                        if continue_on_error is None
                        else continue_on_error
                    ),
                    force=force,
                )
                batch = self.service.process_files(paths, options=options)
                response = batch.to_dict()

                if batch.errors:
                    await ctx.error(f"{len(batch.errors)} file(s) failed")
                await ctx.info(
                    f"Processed {len(batch.processed_ids)}, "
                    f"served {len(batch.cached_ids)} from cache"
                )
                return response

            except ValueError as e:
                await ctx.error(f"Invalid request: {e}")
                raise
            except Exception as e:
                await ctx.error(f"Unexpected error processing files: {e}")
                raise

        @self.mcp.tool()
        async def get_cache_metrics(
            ctx: Context[ServerSession, None],
        ) -> Dict[str, Any]:
            """Return cumulative cache metrics for the file and layout call sites.

            Args:
                ctx: MCP context for logging and progress

            Returns:
                Dictionary keyed by call site with hits, misses, hit ratio and timings
            """
            await ctx.info("Collecting cache metrics")
            try:
                return self.service.get_metrics()
            except Exception as e:
                await ctx.error(f"Error collecting cache metrics: {e}")
                raise

        @self.mcp.tool()
        async def clear_cache(
            ctx: Context[ServerSession, None],
            patterns: Optional[List[str]] = None,
            site: str = SITE_FILES,
        ) -> Dict[str, Any]:
            """Bust cached entries matching glob patterns; no patterns clears everything.

            Args:
                ctx: MCP context for logging and progress
                patterns: Glob patterns matched against item ids
                site: "files", "layout" or "all"

            Returns:
                Dictionary with the removed ids per call site
            """
            await ctx.info(f"Clearing cache (site={site}, patterns={patterns or 'all'})")
            try:
                removed = self.service.clear_cache(patterns, site=site)
                await ctx.info(
                    f"Removed {sum(len(ids) for ids in removed.values())} cached item(s)"
                )
                return {"removed": removed}
            except ValueError as e:
                await ctx.error(f"Invalid request: {e}")
                raise
            except Exception as e:
                await ctx.error(f"Error clearing cache: {e}")
                raise

        @self.mcp.tool()
        async def debug_cache(
            ctx: Context[ServerSession, None],
        ) -> Dict[str, Any]:
            """Return a snapshot of the cache: sizes, dependencies and stale items.

            Args:
                ctx: MCP context for logging and progress
            """
            await ctx.info("Collecting cache debug snapshot")
            try:
                return self.service.debug_cache()
            except Exception as e:
                await ctx.error(f"Error collecting cache snapshot: {e}")
                raise

        logger.info(
            "MCP tools registered: process_files, get_cache_metrics, clear_cache, debug_cache"
        )

    def run(self, transport: str = "stdio") -> None:
        """Run the MCP server.

        Args:
            transport: Transport type to use. Options:
                - "stdio": Standard input/output (default)
                - "streamable-http": HTTP transport
                - "sse": Server-sent events transport
        """
        logger.info(f"Starting MCP server with {transport} transport")
        self.mcp.run(transport=transport)  # type: ignore[arg-type]

    def shutdown(self) -> None:
        """Shutdown the MCP server and cleanup resources."""
        logger.info("Shutting down MCP server")
        self.service.shutdown()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Incremental Dependency Cache MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--data-root",
        type=Path,
        default=None,
        help=(
            "Root directory for log files (logs, batch_metrics). "
            f"Default: {get_default_data_root()}"
        ),
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=None,
        help="Project directory whose files are cached. Default: current directory",
    )
    parser.add_argument(
        "--transport",
        type=str,
        choices=["stdio", "streamable-http", "sse"],
        default="stdio",
        help="Transport type for MCP server. Default: stdio",
    )
    return parser.parse_args(argv)


def main() -> None:
    """Main entry point for MCP server."""
    args = parse_args()

    setup_logging(log_dir=get_logs_dir(args.data_root))

    server = IncrementalCacheMCPServer(data_root=args.data_root, project_root=args.project_root)
    logger.info(
        f"Starting MCP server with data_root={server.data_root}, session_id={server.session_id}"
    )
    try:
        server.run(transport=args.transport)
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
