"""Advisory purchase checks run before a transaction is built.

Supply is checked before the wallet limit. The remote atomic increment is the
authoritative guard; this only stops obviously invalid attempts before the
signing prompt.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from errors import EligibilityError, Result, ValidationError
from models import Raffle, as_utc, utcnow


def supply_exceeded(remaining: int) -> EligibilityError:
    return EligibilityError(
        EligibilityError.SUPPLY_EXCEEDED,
        f"Not enough tickets left! Only {remaining} remaining.",
        remaining=remaining,
    )


def wallet_limit_exceeded(limit: int, already: int, quantity: int) -> EligibilityError:
    can_buy = max(limit - already, 0)
    at_limit = already >= limit
    if at_limit:
        message = f"You have already reached the limit of {limit} ticket(s) for this raffle."
    else:
        message = f"You can only buy {can_buy} more ticket(s). Your limit is {limit}."
    return EligibilityError(
        EligibilityError.WALLET_LIMIT_EXCEEDED,
        message,
        limit=limit,
        already=already,
        at_limit=at_limit,
        can_buy=can_buy,
        excess=already + quantity - limit,
    )


def check_eligibility(raffle: Raffle, quantity: int, prior_tickets: int, now: Optional[datetime] = None) -> Result:
    if not isinstance(quantity, int) or quantity < 1:
        return Result.failure(ValidationError("Quantity must be a whole number of at least 1.", quantity=quantity))
    now = now or utcnow()
    if raffle.winner or raffle.status != "active" or as_utc(raffle.ends_at) <= now:
        return Result.failure(ValidationError("This raffle is no longer accepting entries.", raffle_id=raffle.id))

    remaining = raffle.supply - raffle.sold
    if quantity > remaining:
        return Result.failure(supply_exceeded(max(remaining, 0)))

    limit = raffle.limit_per_wallet or 1
    if prior_tickets + quantity > limit:
        return Result.failure(wallet_limit_exceeded(limit, prior_tickets, quantity))

    return Result.success({"remaining": remaining, "limit": limit, "already": prior_tickets})
