"""Loads the listing search MCP tool definitions from YAML."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from mcp.types import Tool


class ToolConfigLoader:
    """Reads tools.yaml once and serves MCP Tool objects and their input schemas."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Args:
            config_path: Path to the tools file; defaults to tools.yaml next to this module
        """
        if config_path is None:
            config_path = Path(__file__).parent / "tools.yaml"
        self.config_path = Path(config_path)
        self._tools_config: Optional[Dict[str, Any]] = None

    def load_tools_config(self) -> Dict[str, Any]:
        """Load and cache the tools file."""
        if self._tools_config is None:
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise RuntimeError(f"Failed to load tools config from {self.config_path}: {e}")

            if not isinstance(loaded.get("tools"), dict):
                raise RuntimeError(f"{self.config_path} must define a 'tools' mapping")
            self._tools_config = loaded
        return self._tools_config

    def get_tool_names(self) -> List[str]:
        return list(self.load_tools_config()["tools"])

    def get_tool_definitions(self) -> List[Tool]:
        """Get tool definitions as MCP Tool objects."""
        return [
            Tool(
                name=tool_name,
                description=tool_config.get("description", "").strip(),
                inputSchema=tool_config.get("inputSchema", {"type": "object"}),
            )
            for tool_name, tool_config in self.load_tools_config()["tools"].items()
        ]
