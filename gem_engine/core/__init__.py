"""
Core infrastructure package for the GEM engine.

Provides:
- Runtime configuration via pydantic-settings
- Async PostgreSQL connectivity via asyncpg
- The engine error taxonomy
- Logging setup

Usage:
    from gem_engine.core import get_settings, get_db_pool, InputMalformedError
"""

# =============================================================================
# Configuration
# =============================================================================

from gem_engine.core.config import Settings, get_settings

# =============================================================================
# Database
# =============================================================================

from gem_engine.core.database import (
    init_db,
    close_db,
    get_db_pool,
    fetch_rows,
    execute_many,
)

# =============================================================================
# Errors and Logging
# =============================================================================

from gem_engine.core.exceptions import (
    GemEngineError,
    DataInsufficientError,
    ConfigurationMissingError,
    InputMalformedError,
    ConfigurationError,
)
from gem_engine.core.logging_config import configure_logging, LOG_FORMAT

__all__ = [
    'Settings',
    'get_settings',
    'init_db',
    'close_db',
    'get_db_pool',
    'fetch_rows',
    'execute_many',
    'GemEngineError',
    'DataInsufficientError',
    'ConfigurationMissingError',
    'InputMalformedError',
    'ConfigurationError',
    'configure_logging',
    'LOG_FORMAT',
]
