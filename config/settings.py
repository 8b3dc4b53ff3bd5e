"""
Configuration management module with environment variable support, validation, and singleton pattern.

This module provides a centralized configuration system that:
- Loads settings from environment variables using python-dotenv
- Validates configuration values with descriptive error messages
- Supports different environments (dev, test, prod)
- Implements singleton pattern for consistent configuration access
- Provides type-annotated properties with sensible defaults

Config Schema:
    LEARNING_STATE_DIR (str): Directory holding persisted learning state documents
    LEARNING_SCOPE (str): Scope key of the learning state (global, tenant or user id)
    INTERACTION_LOG_LIMIT (int): Number of most recent interactions retained
    PATTERN_LIMIT (int): Maximum number of learned query tokens, 0 for unbounded
    ENVIRONMENT (str): Application environment (dev, test, prod)
    LOG_LEVEL (str): Logging level (DEBUG, INFO, WARNING, ERROR)
    MAX_RETRIES (int): Maximum number of attempts when persisting learning state
    TIMEOUT_SECONDS (int): Tool execution timeout in seconds
    ENABLE_PROMETHEUS_METRICS (bool): Whether to collect Prometheus metrics
    ENABLE_RATE_LIMITING (bool): Whether to rate limit tool requests
    RATE_LIMIT_REQUESTS (int): Requests allowed per rate limit window
    RATE_LIMIT_WINDOW (int): Rate limit window in seconds
    USE_LOGURU (bool): Whether to use loguru instead of standard logging
    ENABLE_RETRY_LOGIC (bool): Whether to retry failed state writes
"""

import os
import re
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""
    pass


class Config:
    """
    Singleton configuration class that manages application settings.

    Loads configuration from environment variables and provides validation
    with descriptive error messages for missing or invalid values.
    """

    _instance: Optional['Config'] = None
    _initialized: bool = False

    def __new__(cls) -> 'Config':
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        """Initialize configuration if not already done."""
        if not self._initialized:
            self._load_environment()
            self._initialized = True

    def _load_environment(self) -> None:
        """Load environment variables from .env file if available."""
        env_path = Path(__file__).parent.parent / '.env'
        if env_path.exists():
            load_dotenv(env_path)

    @staticmethod
    def _flag(name: str, default: str) -> bool:
        return os.getenv(name, default).lower() in ('true', '1', 'yes', 'on')

    @property
    def LEARNING_STATE_DIR(self) -> str:
        """Directory holding persisted learning state documents."""
        return os.getenv('LEARNING_STATE_DIR', './data/learning_state')

    @property
    def LEARNING_SCOPE(self) -> str:
        """Scope key of the learning state."""
        scope = os.getenv('LEARNING_SCOPE', 'global').strip()
        if not re.match(r"^[A-Za-z0-9_.\-]+$", scope):
            raise ConfigurationError(
                f"LEARNING_SCOPE may only contain letters, digits, '.', '_' and '-', got '{scope}'"
            )
        return scope

    @property
    def INTERACTION_LOG_LIMIT(self) -> int:
        """Number of most recent interactions retained."""
        try:
            value = int(os.getenv('INTERACTION_LOG_LIMIT', '1000'))
            if value <= 0:
                raise ValueError("INTERACTION_LOG_LIMIT must be positive")
            return value
        except ValueError as e:
            raise ConfigurationError(f"Invalid INTERACTION_LOG_LIMIT: {e}")

    @property
    def PATTERN_LIMIT(self) -> int:
        """Maximum number of learned query tokens; 0 keeps them all."""
        try:
            value = int(os.getenv('PATTERN_LIMIT', '0'))
            if value < 0:
                raise ValueError("PATTERN_LIMIT must be non-negative")
            return value
        except ValueError as e:
            raise ConfigurationError(f"Invalid PATTERN_LIMIT: {e}")

    @property
    def ENVIRONMENT(self) -> Literal['dev', 'test', 'prod']:
        """Application environment."""
        env = os.getenv('ENVIRONMENT', 'dev').lower()
        if env not in ('dev', 'test', 'prod'):
            raise ConfigurationError(f"ENVIRONMENT must be one of 'dev', 'test', 'prod', got '{env}'")
        return env  # type: ignore

    @property
    def LOG_LEVEL(self) -> str:
        """Logging level."""
        level = os.getenv('LOG_LEVEL', 'INFO').upper()
        valid_levels = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        if level not in valid_levels:
            raise ConfigurationError(f"LOG_LEVEL must be one of {valid_levels}, got '{level}'")
        return level

    @property
    def MAX_RETRIES(self) -> int:
        """Maximum number of attempts when persisting learning state."""
        try:
            value = int(os.getenv('MAX_RETRIES', '3'))
            if value < 0:
                raise ValueError("MAX_RETRIES must be non-negative")
            return value
        except ValueError as e:
            raise ConfigurationError(f"Invalid MAX_RETRIES: {e}")

    @property
    def TIMEOUT_SECONDS(self) -> int:
        """Tool execution timeout in seconds."""
        try:
            value = int(os.getenv('TIMEOUT_SECONDS', '30'))
            if value <= 0:
                raise ValueError("TIMEOUT_SECONDS must be positive")
            return value
        except ValueError as e:
            raise ConfigurationError(f"Invalid TIMEOUT_SECONDS: {e}")

    # System Components Configuration
    @property
    def ENABLE_PROMETHEUS_METRICS(self) -> bool:
        """Whether to enable Prometheus metrics collection."""
        return self._flag('ENABLE_PROMETHEUS_METRICS', 'true')

    @property
    def ENABLE_RATE_LIMITING(self) -> bool:
        """Whether to enable request rate limiting."""
        return self._flag('ENABLE_RATE_LIMITING', 'true')

    @property
    def RATE_LIMIT_REQUESTS(self) -> int:
        """Maximum requests per time window for rate limiting."""
        try:
            value = int(os.getenv('RATE_LIMIT_REQUESTS', '100'))
            if value <= 0:
                raise ValueError("RATE_LIMIT_REQUESTS must be positive")
            return value
        except ValueError as e:
            raise ConfigurationError(f"Invalid RATE_LIMIT_REQUESTS: {e}")

    @property
    def RATE_LIMIT_WINDOW(self) -> int:
        """Time window in seconds for rate limiting."""
        try:
            value = int(os.getenv('RATE_LIMIT_WINDOW', '60'))
            if value <= 0:
                raise ValueError("RATE_LIMIT_WINDOW must be positive")
            return value
        except ValueError as e:
            raise ConfigurationError(f"Invalid RATE_LIMIT_WINDOW: {e}")

    @property
    def USE_LOGURU(self) -> bool:
        """Whether to use loguru for structured logging instead of standard logging."""
        return self._flag('USE_LOGURU', 'true')

    @property
    def ENABLE_RETRY_LOGIC(self) -> bool:
        """Whether to enable tenacity-based retries of learning state writes."""
        return self._flag('ENABLE_RETRY_LOGIC', 'true')

    @property
    def PERSIST_ATTEMPTS(self) -> int:
        """Attempts per learning state write, derived from the retry settings."""
        if not self.ENABLE_RETRY_LOGIC:
            return 1
        return max(1, self.MAX_RETRIES)

    def validate(self) -> None:
        """
        Validate all configuration values.

        Raises:
            ConfigurationError: If any configuration is missing or invalid.
        """
        errors = []

        # Validate learning state directory
        try:
            state_dir = Path(self.LEARNING_STATE_DIR)
            if not state_dir.exists():
                state_dir.mkdir(parents=True, exist_ok=True)
        except (OSError, PermissionError) as e:
            errors.append(f"Cannot create LEARNING_STATE_DIR '{self.LEARNING_STATE_DIR}': {e}")

        # Validate remaining fields (each raises ConfigurationError if invalid)
        for name in ('LEARNING_SCOPE', 'INTERACTION_LOG_LIMIT', 'PATTERN_LIMIT', 'MAX_RETRIES',
                     'TIMEOUT_SECONDS', 'RATE_LIMIT_REQUESTS', 'RATE_LIMIT_WINDOW',
                     'ENVIRONMENT', 'LOG_LEVEL'):
            try:
                getattr(self, name)
            except ConfigurationError as e:
                errors.append(str(e))

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
            raise ConfigurationError(error_msg)

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for debugging."""
        return {
            'LEARNING_STATE_DIR': self.LEARNING_STATE_DIR,
            'LEARNING_SCOPE': self.LEARNING_SCOPE,
            'INTERACTION_LOG_LIMIT': self.INTERACTION_LOG_LIMIT,
            'PATTERN_LIMIT': self.PATTERN_LIMIT,
            'ENVIRONMENT': self.ENVIRONMENT,
            'LOG_LEVEL': self.LOG_LEVEL,
            'MAX_RETRIES': self.MAX_RETRIES,
            'TIMEOUT_SECONDS': self.TIMEOUT_SECONDS,
            'ENABLE_PROMETHEUS_METRICS': self.ENABLE_PROMETHEUS_METRICS,
            'ENABLE_RATE_LIMITING': self.ENABLE_RATE_LIMITING,
            'RATE_LIMIT_REQUESTS': self.RATE_LIMIT_REQUESTS,
            'RATE_LIMIT_WINDOW': self.RATE_LIMIT_WINDOW,
            'USE_LOGURU': self.USE_LOGURU,
            'ENABLE_RETRY_LOGIC': self.ENABLE_RETRY_LOGIC,
        }

    def __repr__(self) -> str:
        """String representation of configuration."""
        config_dict = self.to_dict()
        return f"Config({', '.join(f'{k}={v}' for k, v in config_dict.items())})"


# Global configuration instance
config = Config()
