"""Error taxonomy for the synchronization core."""


class BookingSyncError(Exception):
    """Base class for all synchronization errors."""


class ValidationError(BookingSyncError):
    """Malformed, past-dated or incomplete booking. Never retried."""


class TransientError(BookingSyncError):
    """Network timeout, 5xx or rate limit from a collaborator. Retried with backoff."""


class ConflictError(BookingSyncError):
    """The requested slot is already taken."""


class LockContentionError(BookingSyncError):
    """A lock scope is held by someone else. Callers skip and try later."""

    def __init__(self, scope: str, holder: str | None = None):
        self.scope = scope
        self.holder = holder
        message = f"Lock '{scope}' is held"
        if holder:
            message += f" by {holder}"
        super().__init__(message)


class ExhaustedRetryError(BookingSyncError):
    """A retry entry reached its retry budget and needs manual resolution."""

    def __init__(self, order_id: str, retry_count: int):
        self.order_id = order_id
        self.retry_count = retry_count
        super().__init__(
            f"Order {order_id} exhausted its retries after {retry_count} attempts"
        )


class FatalOrchestratorError(BookingSyncError):
    """Unexpected failure or deadline expiry inside an orchestrated run."""


class OrderNotFoundError(BookingSyncError):
    """The storefront has no order with the requested id."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")
