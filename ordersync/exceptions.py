"""
Exception hierarchy for the order sync pipeline.

Exception Hierarchy:
    OrderSyncError (base)
    ├── MarketplaceError
    │   ├── MarketplaceConnectionError - Network failures after retries (recoverable)
    │   ├── MarketplaceAPIError        - Upstream returned an error status
    │   ├── CredentialRejectedError    - 401/403, token must be refreshed first
    │   └── MarketplaceDataError       - Response payload has unexpected shape
    ├── CredentialRefreshError         - OAuth refresh failed, account is skipped
    ├── PersistenceError               - Store unreachable or unusable
    └── QueueError                     - Redis buffer failure (never user facing)

    QueryTimeoutError                  - Store query exceeded timeout
"""
from typing import Any, Dict, Optional


class OrderSyncError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class MarketplaceError(OrderSyncError):
    """Base class for upstream marketplace failures."""


class MarketplaceConnectionError(MarketplaceError):
    """
    Network-level failure (timeout, connection refused, reset).

    Raised only after the retry budget is exhausted.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, attempts: int = 0):
        super().__init__(message, details)
        self.attempts = attempts


class MarketplaceAPIError(MarketplaceError):
    """Upstream returned a non-success status the caller cannot handle."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class CredentialRejectedError(MarketplaceAPIError):
    """
    Upstream rejected the access token (401/403).

    No further requests for the account are useful until it is refreshed.
    """

    def __init__(self, account_id: str, status_code: int):
        super().__init__(
            f"Credential rejected for account {account_id}",
            {"account_id": account_id},
            status_code=status_code,
        )
        self.account_id = account_id


class MarketplaceDataError(MarketplaceError):
    """Response payload does not match the expected structure."""

    def __init__(self, message: str, expected: str = None, got: str = None):
        super().__init__(message, {"expected": expected, "got": got})
        self.expected = expected
        self.got = got


class CredentialRefreshError(OrderSyncError):
    """OAuth refresh failed; the account cannot be synced this run."""

    def __init__(self, account_id: str, reason: str, status_code: Optional[int] = None):
        super().__init__(
            f"Token refresh failed for account {account_id}",
            {"account_id": account_id, "reason": reason, "status_code": status_code},
        )
        self.account_id = account_id
        self.reason = reason
        self.status_code = status_code


class PersistenceError(OrderSyncError):
    """The store could not be used for this batch at all."""


class QueueError(OrderSyncError):
    """Redis queue operation failed."""


class QueryTimeoutError(PersistenceError):
    """
    Database query exceeded timeout.

    Usually a sign of a lock held by a long batch write.
    """

    def __init__(self, query: str, timeout: float):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        super().__init__(
            f"Query timed out after {timeout}s",
            {"query": self.query, "timeout": timeout},
        )
