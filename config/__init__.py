"""Settings and MCP tool definitions for the listing search server."""

from .settings import Config, ConfigurationError, config
from .tool_loader import ToolConfigLoader

__all__ = ['Config', 'ConfigurationError', 'ToolConfigLoader', 'config']
