"""
Listing Search MCP Server implementation.

This module implements a Model Context Protocol (MCP) server that exposes the
self-learning listing search engine through four tools:
- search_listings: Rank candidate listings for a free-text query
- record_click: Attribute a listing click to the session's latest query
- record_feedback: Rate the session's latest results from 1 to 5
- get_learning_stats: Summarize the learned state

The server validates tool arguments against the JSON Schemas declared in
config/tools.yaml, rate-limits and time-limits every request, meters requests
with Prometheus and flushes the learning state on shutdown.
"""

import asyncio
import json
import logging
import signal
import sys
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from aiolimiter import AsyncLimiter
from jsonschema import ValidationError, validate
from loguru import logger
from mcp.server import Server
from mcp.types import CallToolResult, TextContent, Tool
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from config.settings import ConfigurationError, config
from config.tool_loader import ToolConfigLoader

from .engine import SelfLearningSearchEngine
from .session import SessionTracker

MAX_TRACKED_SESSIONS = 1000


class ListingSearchMCPServer:
    """
    Listing search MCP server.

    Owns one SelfLearningSearchEngine and one SessionTracker per client
    supplied session id. Requests without a session id share the engine's
    default session.
    """

    def __init__(self,
                 engine: Optional[SelfLearningSearchEngine] = None,
                 tool_loader: Optional[ToolConfigLoader] = None) -> None:
        """Initialize the server; the engine is built from config when not given."""
        self.server = Server("listing-search")
        self.logger = self._setup_logging()
        self._register_handlers()

        self.engine = engine or SelfLearningSearchEngine.from_config()
        self.tool_loader = tool_loader or ToolConfigLoader()

        # Tool schema cache for validation
        self._tool_schemas: Dict[str, Dict[str, Any]] = {}

        self._sessions: "OrderedDict[str, SessionTracker]" = OrderedDict()

        if config.ENABLE_RATE_LIMITING:
            self.rate_limiter = AsyncLimiter(
                max_rate=config.RATE_LIMIT_REQUESTS,
                time_period=config.RATE_LIMIT_WINDOW
            )
        else:
            self.rate_limiter = None

        self.enable_metrics = config.ENABLE_PROMETHEUS_METRICS
        if self.enable_metrics:
            self.registry = CollectorRegistry()
            self.request_counter = Counter(
                'mcp_requests_total',
                'Total number of MCP requests',
                ['tool_name', 'status'],
                registry=self.registry
            )
            self.request_duration = Histogram(
                'mcp_request_duration_seconds',
                'Duration of MCP requests',
                ['tool_name'],
                registry=self.registry
            )
            self.active_requests = Gauge(
                'mcp_active_requests',
                'Number of active MCP requests',
                registry=self.registry
            )
        else:
            self.metrics = {
                "total_requests": 0,
                "successful_requests": 0,
                "failed_requests": 0,
                "average_response_time": 0.0,
                "tool_usage": {},
            }

        # Tool dispatch table
        self._tool_handlers = {
            "search_listings": self._search_listings,
            "record_click": self._record_click,
            "record_feedback": self._record_feedback,
            "get_learning_stats": self._get_learning_stats,
        }

    def _setup_logging(self):
        """Configure logging using loguru or fallback to standard logging."""
        # stdout carries the MCP protocol; every log line goes to stderr
        package_logger = logging.getLogger("adaptive_search")
        package_logger.setLevel(getattr(logging, config.LOG_LEVEL))
        if not package_logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
            package_logger.addHandler(handler)

        if config.USE_LOGURU:
            logger.remove()
            logger.add(
                sys.stderr,
                format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | <cyan>{name}</cyan> | {message}",
                level=config.LOG_LEVEL,
                colorize=True
            )
            return logger

        std_logger = logging.getLogger("listing-search-mcp")
        std_logger.setLevel(getattr(logging, config.LOG_LEVEL))
        if not std_logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
            std_logger.addHandler(handler)
        return std_logger

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown handlers for SIGINT and SIGTERM."""

        def signal_handler(signum: int, frame) -> None:
            signal_name = signal.Signals(signum).name
            self.logger.info(f"Received {signal_name}, initiating graceful shutdown...")
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _register_handlers(self) -> None:
        """Register MCP server handlers."""
        @self.server.list_tools()
        async def handle_list_tools() -> List[Tool]:
            return await self._list_tools()

        @self.server.call_tool()
        async def handle_call_tool(name: str, arguments: Dict[str, Any]):
            result = await self._call_tool(name, arguments)
            return result.content

    def _generate_request_id(self) -> str:
        """Generate unique request ID for tracing."""
        return f"req_{uuid.uuid4().hex[:8]}"

    async def _list_tools(self) -> List[Tool]:
        self.logger.debug("Listing available tools")
        return self.tool_loader.get_tool_definitions()

    async def _validate_tool_arguments(self, tool_name: str, arguments: Dict[str, Any]) -> None:
        """
        Validate tool arguments against JSON Schema.

        Raises:
            ValueError: If the tool is unknown or the arguments are invalid
        """
        if tool_name not in self._tool_schemas:
            for tool in await self._list_tools():
                self._tool_schemas[tool.name] = tool.inputSchema

        if tool_name not in self._tool_schemas:
            raise ValueError(f"Unknown tool: {tool_name}")

        try:
            validate(instance=arguments, schema=self._tool_schemas[tool_name])
        except ValidationError as e:
            raise ValueError(f"Invalid arguments for tool '{tool_name}': {e.message}")

    def _update_metrics(self, tool_name: str, execution_time: float, success: bool) -> None:
        """Update performance metrics using Prometheus or fallback."""
        if self.enable_metrics:
            status = "success" if success else "error"
            self.request_counter.labels(tool_name=tool_name, status=status).inc()
            self.request_duration.labels(tool_name=tool_name).observe(execution_time)
            return

        self.metrics["total_requests"] += 1
        usage = self.metrics["tool_usage"]
        usage[tool_name] = usage.get(tool_name, 0) + 1
        if success:
            self.metrics["successful_requests"] += 1
        else:
            self.metrics["failed_requests"] += 1

        total_requests = self.metrics["total_requests"]
        current_avg = self.metrics["average_response_time"]
        self.metrics["average_response_time"] = (
            current_avg * (total_requests - 1) + execution_time
        ) / total_requests

    @staticmethod
    def _error_result(message: str) -> CallToolResult:
        return CallToolResult(
            content=[TextContent(type="text", text=json.dumps({"error": message}, ensure_ascii=False))],
            isError=True,
        )

    async def _call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> CallToolResult:
        """
        Tool execution handler with validation, rate limiting, timeout control
        and request metrics.

        Args:
            name: The name of the tool to execute
            arguments: Arguments provided for the tool

        Returns:
            CallToolResult with a JSON TextContent reply
        """
        request_id = self._generate_request_id()
        start_time = time.time()
        arguments = arguments or {}

        self.logger.info(f"[{request_id}] Executing tool: {name}")
        if self.enable_metrics:
            self.active_requests.inc()

        try:
            if self.rate_limiter:
                await self.rate_limiter.acquire()

            try:
                await self._validate_tool_arguments(name, arguments)
            except ValueError as e:
                error_msg = f"Validation error: {e}"
                self.logger.error(f"[{request_id}] {error_msg}")
                self._update_metrics(name, time.time() - start_time, False)
                return self._error_result(error_msg)

            timeout_seconds = config.TIMEOUT_SECONDS
            try:
                async with asyncio.timeout(timeout_seconds):
                    handler = self._tool_handlers[name]
                    result = await handler(request_id, **arguments)
            except asyncio.TimeoutError:
                error_msg = f"Tool execution timed out after {timeout_seconds}s"
                self.logger.error(f"[{request_id}] {error_msg}")
                self._update_metrics(name, time.time() - start_time, False)
                return self._error_result(error_msg)

            execution_time = time.time() - start_time
            self.logger.info(f"[{request_id}] Tool '{name}' completed successfully in {execution_time:.3f}s")
            self._update_metrics(name, execution_time, True)
            return CallToolResult(content=result)

        except Exception as e:
            error_msg = f"Unexpected error executing tool {name}: {e}"
            self.logger.exception(f"[{request_id}] {error_msg}")
            self._update_metrics(name, time.time() - start_time, False)
            return self._error_result(error_msg)
        finally:
            if self.enable_metrics:
                self.active_requests.dec()

    def _session(self, session_id: Optional[str]) -> SessionTracker:
        """Session for a client supplied id; the default session when omitted."""
        if not session_id:
            return self.engine.default_session

        session = self._sessions.get(session_id)
        if session is None:
            session = self.engine.new_session(session_id)
            self._sessions[session_id] = session
            if len(self._sessions) > MAX_TRACKED_SESSIONS:
                evicted, _ = self._sessions.popitem(last=False)
                self.logger.debug(f"Evicted idle session {evicted}")
        else:
            self._sessions.move_to_end(session_id)
        return session

    @staticmethod
    def _json_reply(payload: Dict[str, Any]) -> List[TextContent]:
        return [TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))]

    async def _search_listings(self,
                               request_id: str,
                               query: str,
                               listings: List[Dict[str, Any]],
                               session_id: Optional[str] = None,
                               include_scores: bool = False) -> List[TextContent]:
        """
        Rank the supplied listings for a query.

        Returns:
            JSON with the query, session id, ranked listings and timing metadata
        """
        session = self._session(session_id)
        response = await asyncio.to_thread(self.engine.search_with_details, query, listings, session)
        self.logger.debug(f"[{request_id}] {len(response.results)} of {len(listings)} listings matched")

        if include_scores:
            results = [ranked.to_dict() for ranked in response.results]
        else:
            results = [ranked.item.to_dict() for ranked in response.results]

        return self._json_reply({
            "query": response.query,
            "session_id": response.session_id,
            "results": results,
            "metadata": response.metadata,
        })

    async def _record_click(self,
                            request_id: str,
                            item_id: Union[str, int],
                            session_id: Optional[str] = None) -> List[TextContent]:
        item_id = str(item_id)
        session = self._session(session_id)
        recorded = await asyncio.to_thread(self.engine.record_click, item_id, session)
        self.logger.debug(f"[{request_id}] Click on {item_id} recorded: {recorded}")
        return self._json_reply({
            "recorded": recorded,
            "item_id": item_id,
            "session_id": session.session_id,
            "query": session.current_query,
        })

    async def _record_feedback(self,
                               request_id: str,
                               rating: int,
                               session_id: Optional[str] = None) -> List[TextContent]:
        session = self._session(session_id)
        recorded = await asyncio.to_thread(self.engine.record_feedback, rating, session)
        self.logger.debug(f"[{request_id}] Rating {rating} recorded: {recorded}")
        return self._json_reply({
            "recorded": recorded,
            "rating": rating,
            "session_id": session.session_id,
            "query": session.current_query,
        })

    async def _get_learning_stats(self, request_id: str) -> List[TextContent]:
        stats = self.engine.get_learning_stats()
        return self._json_reply(stats.to_dict())

    def get_metrics(self) -> Dict[str, Any]:
        """Server request metrics together with the engine's metrics."""
        if self.enable_metrics:
            server_metrics = {
                "prometheus_metrics": generate_latest(self.registry).decode('utf-8'),
                "format": "prometheus"
            }
        else:
            server_metrics = {
                "metrics": self.metrics,
                "format": "simple"
            }
        server_metrics["engine"] = self.engine.get_metrics()
        return server_metrics

    def _validate_startup_dependencies(self) -> None:
        """
        Validate configuration and the tool definitions before serving.

        Raises:
            ConfigurationError: If configuration or tool definitions are invalid
        """
        self.logger.info("Validating startup dependencies...")
        config.validate()

        state_dir = Path(config.LEARNING_STATE_DIR)
        self.logger.info(f"Learning state: {state_dir / (config.LEARNING_SCOPE + '.json')}")

        try:
            tool_names = self.tool_loader.get_tool_names()
        except RuntimeError as e:
            raise ConfigurationError(str(e))

        missing = set(self._tool_handlers) - set(tool_names)
        if missing:
            raise ConfigurationError(f"Tools without a definition: {sorted(missing)}")

        self.logger.info("All startup dependencies validated successfully")

    async def run(self) -> None:
        """
        Run the server using stdio transport.

        Performs startup validation, loads the learning state and serves until
        shutdown is requested; the learning state is flushed on exit.
        """
        try:
            self.logger.info("Starting Listing Search MCP Server...")
            self._setup_signal_handlers()
            self._validate_startup_dependencies()
            await asyncio.to_thread(self.engine.start)

            from mcp.server.stdio import stdio_server

            async with stdio_server() as (read_stream, write_stream):
                self.logger.info("Server started successfully, listening for MCP requests...")
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options()
                )

        except KeyboardInterrupt:
            self.logger.info("Received shutdown signal, stopping server...")
        except Exception as e:
            self.logger.error(f"Fatal error in server: {e}")
            raise
        finally:
            self.engine.shutdown()
            self.logger.info("Listing Search MCP Server shutdown complete")


async def main() -> None:
    await ListingSearchMCPServer().run()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
