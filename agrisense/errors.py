from typing import Dict, List, Optional


class AgriSenseError(Exception):
    """Base class for all service errors"""


class ValidationError(AgriSenseError):
    """Malformed or out-of-range submission input.

    errors maps a dotted field path (e.g. "fields.0.coordinates") to messages.
    """

    def __init__(self, errors: Dict[str, List[str]], message: str = "Validation failed"):
        super().__init__(message)
        self.message = message
        self.errors = errors


class ProviderError(AgriSenseError):
    """AI or weather provider unreachable, non-success status, or unusable content"""

    def __init__(self, message: str, provider: str = "openai", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class PersistenceError(AgriSenseError):
    """A database write or read failed"""


class NotFoundError(AgriSenseError):
    """Unknown submission key"""
