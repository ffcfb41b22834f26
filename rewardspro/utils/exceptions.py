"""
Custom exceptions for RewardsPro business logic.

Each exception carries a stable ``code`` and an ``http_status`` so the
app-level error handler can map it to a JSON error response.
"""


class RewardsProError(Exception):
    """Base exception for all RewardsPro business logic errors."""

    http_status = 400

    def __init__(self, message: str, code: str = "REWARDSPRO_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(RewardsProError):
    """Resource not found."""

    http_status = 404

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class CustomerNotFoundError(NotFoundError):
    """Customer not found."""

    def __init__(self, identifier=None):
        super().__init__("Customer", identifier)


class TierNotFoundError(NotFoundError):
    """Tier not found."""

    def __init__(self, identifier=None):
        super().__init__("Tier", identifier)


class JobNotFoundError(NotFoundError):
    """Migration job not found."""

    def __init__(self, identifier=None):
        super().__init__("Job", identifier)


class ValidationError(RewardsProError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class InsufficientBalanceError(RewardsProError):
    """Not enough store credit for the operation."""

    http_status = 422

    def __init__(self, current, required):
        self.current = current
        self.required = required
        message = f"Insufficient store credit. Current: {current}, Required: {required}"
        super().__init__(message, "INSUFFICIENT_BALANCE")


class LimitExceededError(RewardsProError):
    """A configured limit was exceeded (e.g., manual credit cap)."""

    http_status = 422

    def __init__(self, resource: str, limit, current):
        self.limit = limit
        self.current = current
        message = f"{resource} limit exceeded. Limit: {limit}, Requested: {current}"
        super().__init__(message, f"{resource.upper().replace(' ', '_')}_LIMIT_EXCEEDED")


class InvalidStatusTransitionError(RewardsProError):
    """Invalid status transition for a resource."""

    http_status = 409

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, "INVALID_STATUS_TRANSITION")


class ShopifyUserError:
    """A single entry of a mutation's ``userErrors`` list."""

    def __init__(self, message: str, field=None):
        self.message = message
        self.field = field

    @classmethod
    def from_dict(cls, data: dict) -> 'ShopifyUserError':
        return cls(message=data.get('message', ''), field=data.get('field'))

    def __repr__(self):
        return f'<ShopifyUserError {self.field}: {self.message}>'

    def to_dict(self):
        return {'field': self.field, 'message': self.message}


class ShopifyError(RewardsProError):
    """Error communicating with the Shopify Admin API."""

    http_status = 502

    def __init__(self, message: str, original_error: Exception = None, user_errors=None):
        self.original_error = original_error
        self.user_errors = user_errors or []
        super().__init__(message, "SHOPIFY_ERROR")


class ShopifyTimeoutError(ShopifyError):
    """A Shopify request exceeded its timeout."""

    http_status = 504


class DuplicateError(RewardsProError):
    """Resource already exists."""

    http_status = 409

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} already exists"
        if identifier:
            message = f"{resource} with {identifier} already exists"
        super().__init__(message, "DUPLICATE_ENTRY")


class ImportAlreadyRunningError(RewardsProError):
    """A migration job is already pending or processing for this shop."""

    http_status = 409

    def __init__(self, job_id=None):
        self.job_id = job_id
        message = "An import is already in progress"
        if job_id:
            message = f"An import is already in progress (job {job_id})"
        super().__init__(message, "IMPORT_ALREADY_RUNNING")


class NoActiveTiersError(RewardsProError):
    """The shop has no active tiers configured."""

    http_status = 422

    def __init__(self):
        super().__init__(
            "No active tiers configured. Create at least one tier before importing orders.",
            "NO_ACTIVE_TIERS"
        )


class LedgerInvariantError(RewardsProError):
    """The ledger and the cached balance disagree."""

    http_status = 500

    def __init__(self, customer_id, message: str):
        self.customer_id = customer_id
        super().__init__(f"Ledger invariant violated for customer {customer_id}: {message}", "LEDGER_INVARIANT")
