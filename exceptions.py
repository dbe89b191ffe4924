# chain_sync/exceptions.py

from typing import Any, Optional


class ChainSyncError(Exception):
    """Base for everything this package raises on purpose."""
    retryable = False


class DecodeError(ChainSyncError):
    """Malformed event payload. The reader skips the single event."""


class ValidationError(ChainSyncError):
    """Bad admin-action arguments. Raised before any network call."""


class ConfigError(ChainSyncError):
    """Ledger deployment or signer settings are missing or unusable."""


class TransientLedgerError(ChainSyncError):
    """
    Rate limit, timeout or socket failure talking to the ledger node.
    The retry policy retries these and nothing else.
    """
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LedgerRpcError(ChainSyncError):
    """
    The node answered with a JSON-RPC error (move abort, bad params, ...).
    Carries the structured error so alerts can include it.
    """

    def __init__(
        self,
        message: str,
        *,
        method: Optional[str] = None,
        code: Optional[int] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.method = method
        self.code = code
        self.data = data


class PersistenceError(ChainSyncError):
    """Wraps driver errors from the external order store."""


class NotFoundError(ChainSyncError):
    """An update targeted a local order that no longer exists."""

    def __init__(self, order_id: str):
        super().__init__(f"Local order {order_id} not found")
        self.order_id = order_id
