"""Error types raised across the play pipeline"""
from typing import Any, Dict, List, Optional

class PlayLedgerError(Exception):
    """Base class for pipeline errors"""

class BatchValidationError(PlayLedgerError):
    """A reported batch failed schema validation; nothing was written"""

    def __init__(self, reason: str, index: Optional[int] = None, field: Optional[str] = None,
                 details: Optional[List[Dict[str, Any]]] = None):
        self.reason = reason
        self.index = index
        self.field = field
        self.details = details or []
        location = f" at plays[{index}]" if index is not None else ""
        if field:
            location += f".{field}"
        super().__init__(f"Invalid play batch{location}: {reason}")

class AuthenticationError(PlayLedgerError):
    """Caller identity is missing or could not be verified"""

class StorageError(PlayLedgerError):
    """The backing store rejected or failed a read or write"""

class InvalidStatusTransition(PlayLedgerError):
    """A payout status change that the payout lifecycle does not allow"""

class ReportError(PlayLedgerError):
    """The ingestion endpoint refused or failed a reported batch"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)
