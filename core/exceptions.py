"""Shared exception types for core portfolio logic."""

from typing import List, Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ConfigurationError(ValueError):
    """Raised at startup when the configuration violates an invariant."""

    def __init__(self, errors: List[str]):
        super().__init__(f"Invalid configuration: {len(errors)} error(s) found")
        self.errors = errors
