# parksense_gateway/core/errors.py
from typing import Optional


class ParkSenseError(Exception):
    """Base class for all gateway errors"""


class FramingOverflow(ParkSenseError):
    """An unterminated line grew past the framer's limit"""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Unterminated line of {size} bytes exceeds limit of {limit}")
        self.size = size
        self.limit = limit


class CommandValidationError(ParkSenseError, ValueError):
    """Outbound command carries invalid arguments"""


class ConnectionLostError(ParkSenseError):
    """Transport dropped (EOF or I/O failure)"""

    def __init__(self, connection_id: str, reason: Optional[str] = None):
        message = f"Connection {connection_id} lost"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.connection_id = connection_id
        self.reason = reason


class RepositoryError(ParkSenseError):
    """Slot repository operation failed"""

    def __init__(self, operation: str, detail: str, status_code: Optional[int] = None):
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
