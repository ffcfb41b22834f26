"""
Utility modules for RewardsPro.
"""
from .logging_config import setup_logging
from .errors import (
    ErrorCode,
    error_response,
    from_exception,
    bad_request,
    unauthorized,
    not_found
)
from .exceptions import (
    RewardsProError,
    NotFoundError,
    CustomerNotFoundError,
    TierNotFoundError,
    JobNotFoundError,
    ValidationError,
    InsufficientBalanceError,
    LimitExceededError,
    InvalidStatusTransitionError,
    ShopifyUserError,
    ShopifyError,
    ShopifyTimeoutError,
    DuplicateError,
    ImportAlreadyRunningError,
    NoActiveTiersError,
    LedgerInvariantError
)
