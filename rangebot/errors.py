"""
Error taxonomy for the rebalancer.

Collaborators wrap web3 / RPC failures into these types so the agent can apply
one recovery policy per class of failure.
"""


class RangeBotError(Exception):
    """Base class for every error raised by rangebot."""


class InvalidConfiguration(RangeBotError):
    """Bad settings. Fatal at startup."""


class QueryFailed(RangeBotError):
    """A read from the chain or wallet failed. Recoverable for this cycle."""


class InvalidRange(RangeBotError):
    """A price window with upper <= lower reached the allocation math."""


class TransactionError(RangeBotError):
    """A single submission attempt failed."""


class TransactionRejected(TransactionError):
    """The RPC refused the transaction, or it was mined and reverted."""


class ConfirmationTimeout(TransactionError):
    """No receipt arrived within the confirmation window."""


class SubmissionExhausted(RangeBotError):
    """Every submission attempt failed (or backoff was interrupted by shutdown)."""

    def __init__(self, last_error, attempts: int, cancelled: bool = False):
        self.last_error = last_error
        self.attempts = attempts
        self.cancelled = cancelled
        reason = "cancelled during backoff" if cancelled else "failed"
        super().__init__(
            f"Transaction {reason} after {attempts} attempt(s): {last_error}"
        )
