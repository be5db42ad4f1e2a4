from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class RaffleError(Exception):
    """Base class for every failure the raffle engine reports."""

    kind = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, **self.details}


class ValidationError(RaffleError):
    kind = "validation"


class InsufficientFunds(ValidationError):
    kind = "insufficient_funds"


class EligibilityError(RaffleError):
    kind = "eligibility"

    SUPPLY_EXCEEDED = "SupplyExceeded"
    WALLET_LIMIT_EXCEEDED = "WalletLimitExceeded"

    def __init__(self, reason: str, message: str, **details: Any) -> None:
        super().__init__(message, reason=reason, **details)
        self.reason = reason


class WalletError(RaffleError):
    kind = "wallet"


class ChainError(RaffleError):
    kind = "chain"


class BookkeepingError(RaffleError):
    kind = "bookkeeping"


class IndexerError(RaffleError):
    kind = "indexer"


class LifecycleError(RaffleError):
    kind = "lifecycle"


class StoreError(RaffleError):
    kind = "store"


@dataclass
class Result:
    """Success/failure envelope returned across every engine boundary."""

    ok: bool
    value: Any = None
    error: Optional[RaffleError] = None
    warnings: list = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None, warnings: Optional[list] = None) -> "Result":
        return cls(ok=True, value=value, warnings=list(warnings or []))

    @classmethod
    def failure(cls, error: RaffleError) -> "Result":
        return cls(ok=False, error=error)

    def unwrap(self) -> Any:
        if not self.ok:
            raise self.error  # type: ignore[misc]
        return self.value
