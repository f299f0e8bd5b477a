"""
Error taxonomy for the GEM engine.

Three condition classes describe inputs the engine must survive. They are
raised close to where the condition is detected and handled inside the engine,
so none of them reaches a caller of a compute operation:

- DataInsufficientError: too little history or too few entities. Handled by
  leaving a metric undefined or using default percentile bands.
- ConfigurationMissingError: no stored config, or a stored document that is
  not a JSON object. Handled by falling back to documented defaults with a
  warning.
- InputMalformedError: a record or metrics row that fails validation.
  Handled by skipping the offending entity with a warning.

ConfigurationError is the one caller-facing error: an explicit config update
that would produce an invalid EngineConfig.
"""

from typing import Optional


class GemEngineError(Exception):
    """Base class for engine errors."""


class DataInsufficientError(GemEngineError):
    """Not enough data to compute a value."""


class ConfigurationMissingError(GemEngineError):
    """Stored configuration is absent or unusable."""

    def __init__(self, client_id: str, message: str):
        self.client_id = client_id
        super().__init__(f"{client_id}: {message}")


class InputMalformedError(GemEngineError):
    """An input record could not be validated."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message if entity_id is None else f"{entity_id}: {message}")


class ConfigurationError(GemEngineError):
    """An explicit configuration update was rejected."""


__all__ = [
    'GemEngineError',
    'DataInsufficientError',
    'ConfigurationMissingError',
    'InputMalformedError',
    'ConfigurationError',
]
