"""
Error kinds raised by the yield aggregator client.

Every error names the precondition that failed. Validation errors are raised
before any state is touched; network errors are surfaced as-is and never
retried here.
"""


class AggregatorError(Exception):
    """Base class for all aggregator failures."""
    code = "AGGREGATOR_ERROR"


class InvalidAmount(AggregatorError):
    """Raised when an amount is malformed, negative, zero or out of range."""
    code = "INVALID_AMOUNT"


class InsufficientBalance(AggregatorError):
    """Raised when a balance cannot cover the requested amount."""
    code = "INSUFFICIENT_BALANCE"


class NoYieldToClaim(AggregatorError):
    code = "NO_YIELD_TO_CLAIM"


class Unauthorized(AggregatorError):
    """Raised when the caller is not the authority or not the account owner."""
    code = "UNAUTHORIZED"


class AlreadyInitialized(AggregatorError):
    code = "ALREADY_INITIALIZED"


class SchemaMismatch(AggregatorError):
    """Raised when an account buffer does not decode as the expected kind."""
    code = "SCHEMA_MISMATCH"


class UnsupportedChain(AggregatorError):
    code = "UNSUPPORTED_CHAIN"


class InvalidTransition(AggregatorError):
    """Raised on an illegal bridge request status move."""
    code = "INVALID_TRANSITION"


class NetworkFailure(AggregatorError):
    """Transport-level failure. Retrying is the caller's decision."""
    code = "NETWORK_FAILURE"


class ConfirmationTimeout(NetworkFailure):
    """
    The instruction was submitted but its outcome is unknown.

    The instruction may or may not have been applied; callers must re-read
    state before deciding whether to resubmit.
    """
    code = "CONFIRMATION_TIMEOUT"

    def __init__(self, message: str, signature: str = None):
        super().__init__(message)
        self.signature = signature


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        AggregatorError, InvalidAmount, InsufficientBalance, NoYieldToClaim,
        Unauthorized, AlreadyInitialized, SchemaMismatch, UnsupportedChain,
        InvalidTransition, NetworkFailure, ConfirmationTimeout,
    )
}
