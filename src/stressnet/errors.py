"""Error taxonomy shared by the store, RPC pool, signer and drivers.

Per-transaction errors (rejections, timeouts, bad credentials or intents) are
turned into outcomes by the caller. ``StoreUnavailable`` is fatal to a run.
"""

from stressnet.constants import RejectReason


class StressError(Exception):
    """Base class for every error raised by stressnet."""

    # Set by the dispatcher when the failure happened after a nonce was reserved.
    nonce: int | None = None


class TransientNetworkError(StressError):
    """Connection reset, timeout, HTTP 5xx or rate limiting. Retried with backoff.

    ``maybe_sent`` is False only when the request provably never left this
    process (connection refused, connect timeout, rate limited before
    processing).
    """

    def __init__(self, message: str, *, maybe_sent: bool = True) -> None:
        super().__init__(message)
        self.maybe_sent = maybe_sent


class RejectedError(StressError):
    """The endpoint refused the request. Never retried."""

    def __init__(self, reason: RejectReason, message: str, *, code: int | None = None) -> None:
        super().__init__(f"{reason}: {message}")
        self.reason = reason
        self.code = code
        self.detail = message


class DeadlineExceeded(StressError):
    """A confirmation, observation or retry budget ran out."""


class RetryExhausted(DeadlineExceeded):
    def __init__(self, message: str, *, attempts: int, maybe_sent: bool, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.maybe_sent = maybe_sent
        self.last_error = last_error


class CredentialUnavailable(StressError):
    pass


class InvalidIntent(StressError):
    pass


class StoreUnavailable(StressError):
    """The account store cannot be read or written; account state is untrustworthy."""


class AccountNotFound(StressError, KeyError):
    def __str__(self) -> str:
        return f"account not found: {self.args[0]}" if self.args else "account not found"


class InvalidTransition(StressError):
    pass
