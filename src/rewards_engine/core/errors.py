"""Exception taxonomy shared by the ledger and reward services."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:  # pragma: no cover - typing only
    from rewards_engine.models.ledger import LedgerEntry


class RewardEngineError(RuntimeError):
    """Base exception for ledger and reward failures."""


class AccountNotFound(RewardEngineError):
    """Raised when a command or query targets an unknown account."""

    def __init__(self, account_id: UUID) -> None:
        super().__init__(f"Reward account {account_id} does not exist")
        self.account_id = account_id


class InvalidAmount(RewardEngineError, ValueError):
    """Raised when a ledger command carries a non-positive magnitude."""


class InsufficientBalance(RewardEngineError):
    """Raised when a debit would take an account below zero."""

    def __init__(self, account_id: UUID, *, requested: int, available: int) -> None:
        super().__init__(
            f"Account {account_id} cannot debit {requested} points (available {available})"
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class DuplicateIdempotencyKey(RewardEngineError):
    """Raised by the ledger when an idempotency key was already applied.

    The engine converts this into a replay result; it never reaches callers
    of ``RewardEngine.record``.
    """

    def __init__(self, entry: "LedgerEntry") -> None:
        super().__init__(
            f"Idempotency key {entry.idempotency_key!r} already applied to account {entry.account_id}"
        )
        self.entry = entry


class IdempotencyKeyReuse(RewardEngineError):
    """Raised when a known idempotency key arrives with a different payload."""


class InvalidIdempotencyKey(RewardEngineError, ValueError):
    """Raised when a caller key is empty or uses a namespace reserved for engine-generated credits."""


class InvalidReferral(RewardEngineError, ValueError):
    """Raised when an account registration names an unusable referrer."""


class InvalidTransfer(RewardEngineError, ValueError):
    """Raised when a transfer names the same account on both sides."""


class SerializationConflict(RewardEngineError):
    """Transient write conflict; the whole cascade is safe to retry."""


class RetryExhausted(RewardEngineError):
    """Raised after the configured number of conflict retries failed."""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts due to write conflicts")
        self.operation = operation
        self.attempts = attempts


class ConfigurationMissing(RewardEngineError):
    """Raised when a required reward rule (rate, threshold, table entry) is absent."""


class CascadeDepthExceeded(RewardEngineError):
    """Raised when follow-up ledger writes nest deeper than the configured bound."""

    def __init__(self, depth: int, limit: int) -> None:
        super().__init__(f"Reward cascade reached depth {depth} (limit {limit})")
        self.depth = depth
        self.limit = limit


__all__ = [
    "AccountNotFound",
    "CascadeDepthExceeded",
    "ConfigurationMissing",
    "DuplicateIdempotencyKey",
    "IdempotencyKeyReuse",
    "InvalidIdempotencyKey",
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidReferral",
    "InvalidTransfer",
    "RetryExhausted",
    "RewardEngineError",
    "SerializationConflict",
]
