"""
Exception hierarchy for the volume bot.

Configuration and funding problems are surfaced to the caller. State problems
trigger one recovery attempt (re-read curve, create lookup table). Size,
simulation and delivery problems drop the affected transaction group while the
operation continues with the remaining groups.
"""

from typing import Any, List, Optional


class VolumeBotError(Exception):
    """Base exception for volume bot errors."""
    pass


class ConfigurationError(VolumeBotError):
    """Invalid or missing configuration, rejected before any network call."""
    pass


class StateUnavailableError(VolumeBotError):
    """On-chain or persisted state that an operation needs is missing."""
    pass


class InvalidCurveStateError(StateUnavailableError):
    """Pool account is missing or has a zero reserve."""
    pass


class TableNotRetrievableError(StateUnavailableError):
    """Lookup table did not become readable within the settle window."""
    pass


class EmptyWalletSetError(StateUnavailableError):
    """No wallets were found in the persisted wallet store."""
    pass


class ResourceInsufficientError(VolumeBotError):
    """A balance is below what the operation requires."""
    pass


class InsufficientFundsError(ResourceInsufficientError):
    """Fee payer cannot cover the operation."""

    def __init__(self, message: str, required: int = 0, available: int = 0):
        super().__init__(message)
        self.required = required
        self.available = available


class SizeExceededError(VolumeBotError):
    """Compiled transaction is larger than the wire ceiling."""

    def __init__(self, size: int, limit: int, label: str = ""):
        super().__init__(f"{label or 'Transaction'} is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class SimulationRejectedError(VolumeBotError):
    """Dry-run of a transaction returned an error."""

    def __init__(self, err: Any, logs: Optional[List[str]] = None, label: str = ""):
        super().__init__(f"Simulation failed for {label or 'transaction'}: {err}")
        self.err = err
        self.logs = list(logs or [])


class DeliveryFailedError(VolumeBotError):
    """Both the bundle path and direct broadcast were exhausted."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class RateLimitedError(VolumeBotError):
    """Remote endpoint asked us to back off."""

    def __init__(self, message: str, retry_after: float = 1.0):
        super().__init__(message)
        self.retry_after = retry_after


class RelayError(VolumeBotError):
    """Bundle relay request failed."""
    pass


class PollTimeoutError(VolumeBotError):
    """Polled state did not reach the expected condition before the deadline."""

    def __init__(self, message: str, last_value: Any = None):
        super().__init__(message)
        self.last_value = last_value


class WalletStoreError(VolumeBotError):
    """Persisted wallet or lookup table file cannot be read or written."""
    pass
