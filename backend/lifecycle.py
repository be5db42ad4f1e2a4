"""
Raffle lifecycle: phase detection, winner draws and active/past bucketing.

Phases are derived on every read, never stored:
- ACTIVE: status "active", no winner, now < ends_at
- EXPIRED_PENDING_DRAW: status still "active", no winner, now >= ends_at
- ENDED: a winner is recorded or status is "ended"

Each refresh asks the remote draw procedure for a winner on every expired raffle.
The procedure is assumed idempotent server-side; no cross-pass dedup happens here.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from errors import LifecycleError, RaffleError, Result, StoreError, ValidationError
from models import Raffle, as_utc, parse_raffle, utcnow

logger = logging.getLogger("raffles.lifecycle")

_SCHEDULER_THREAD: Optional[threading.Thread] = None


class RafflePhase(str, Enum):
    ACTIVE = "active"
    EXPIRED_PENDING_DRAW = "expired_pending_draw"
    ENDED = "ended"


class SortOrder(str, Enum):
    NEWEST = "newest"
    ENDING_SOON = "ending_soon"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"


def phase_of(raffle: Raffle, now: Optional[datetime] = None) -> RafflePhase:
    now = now or utcnow()
    if raffle.winner or raffle.status == "ended":
        return RafflePhase.ENDED
    if now >= as_utc(raffle.ends_at):
        return RafflePhase.EXPIRED_PENDING_DRAW
    return RafflePhase.ACTIVE


def _created_key(raffle: Raffle) -> float:
    return as_utc(raffle.created_at).timestamp() if raffle.created_at else 0.0


def sort_active(raffles: List[Raffle], order: SortOrder = SortOrder.NEWEST) -> List[Raffle]:
    if order == SortOrder.ENDING_SOON:
        return sorted(raffles, key=lambda r: as_utc(r.ends_at))
    if order == SortOrder.PRICE_ASC:
        return sorted(raffles, key=lambda r: r.price)
    if order == SortOrder.PRICE_DESC:
        return sorted(raffles, key=lambda r: r.price, reverse=True)
    return sorted(raffles, key=_created_key, reverse=True)


@dataclass
class RaffleListing:
    active: List[Raffle] = field(default_factory=list)
    past: List[Raffle] = field(default_factory=list)
    drawn: Dict[str, Optional[str]] = field(default_factory=dict)
    draw_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def all(self) -> List[Raffle]:
        return self.active + self.past


def my_raffles(listing: RaffleListing, wallet: str) -> List[Raffle]:
    return [r for r in listing.active if r.creator == wallet] + [
        r for r in listing.past if r.creator == wallet or r.winner == wallet
    ]


class LifecycleController:
    def __init__(self, store, sink=None) -> None:
        self.store = store
        self.sink = sink
        self._previous: Dict[str, Raffle] = {}
        self._announced: Set[str] = set()
        self._lock = threading.Lock()

    def run_draws(self, now: Optional[datetime] = None) -> Result:
        """Call the draw procedure once for every expired raffle still marked active."""
        now = now or utcnow()
        try:
            expired = self.store.list_expired_active(now)
        except StoreError as exc:
            logger.warning("expired_lookup_failed error=%s", exc)
            return Result.failure(LifecycleError(f"Expired raffle lookup failed: {exc.message}"))

        drawn: Dict[str, Optional[str]] = {}
        errors: Dict[str, str] = {}
        if expired:
            logger.info("draw_pass expired=%s", len(expired))
        for raffle_id in expired:
            try:
                drawn[raffle_id] = self.store.pick_raffle_winner(raffle_id)
                logger.info("draw_result raffle=%s winner=%s", raffle_id, drawn[raffle_id])
            except RaffleError as exc:
                # Retried on the next pass.
                errors[raffle_id] = exc.message
                logger.warning("draw_failed raffle=%s error=%s", raffle_id, exc.message)
        return Result.success({"drawn": drawn, "errors": errors})

    def refresh(self, now: Optional[datetime] = None) -> Result:
        now = now or utcnow()
        with self._lock:
            draws = self.run_draws(now)
            drawn = draws.value["drawn"] if draws.ok else {}
            errors = draws.value["errors"] if draws.ok else {}

            try:
                rows = self.store.list_raffles()
            except StoreError as exc:
                logger.error("raffle_list_failed error=%s", exc, exc_info=True)
                return Result.failure(exc)

            listing = RaffleListing(drawn=drawn, draw_errors=errors)
            for row in rows:
                try:
                    raffle = Raffle.from_row(row)
                except (KeyError, ValueError) as exc:
                    logger.warning("raffle_row_skipped id=%s error=%s", row.get("id"), exc)
                    continue
                winner = drawn.get(raffle.id)
                if winner and not raffle.winner:
                    raffle = raffle.model_copy(update={"winner": winner, "status": "ended"})
                if phase_of(raffle, now) == RafflePhase.ACTIVE:
                    listing.active.append(raffle)
                else:
                    listing.past.append(raffle)

            self._announce_new_winners(listing, drawn)
            self._previous = {r.id: r for r in listing.all}
        return Result.success(listing)

    def _announce_new_winners(self, listing: RaffleListing, drawn: Dict[str, Optional[str]]) -> None:
        for raffle in listing.past:
            if not raffle.winner or raffle.id in self._announced:
                continue
            before = self._previous.get(raffle.id)
            newly_won = drawn.get(raffle.id) is not None or (before is not None and not before.winner)
            if not newly_won:
                continue
            self._announced.add(raffle.id)
            if self.sink is None:
                continue
            try:
                participants = len({e["wallet_address"] for e in self.store.list_entries(raffle.id)})
            except StoreError as exc:
                logger.warning("participant_count_failed raffle=%s error=%s", raffle.id, exc)
                participants = 0
            self.sink.raffle_ended(raffle, participants)

    def request_draw(self, raffle_id: str, caller: str, now: Optional[datetime] = None) -> Result:
        """Creator-triggered early draw once every ticket is sold."""
        now = now or utcnow()
        try:
            row = self.store.get_raffle(raffle_id)
            if row is None:
                return Result.failure(ValidationError("Raffle not found.", raffle_id=raffle_id))
            raffle = parse_raffle(row)
        except StoreError as exc:
            return Result.failure(exc)
        if caller != raffle.creator:
            return Result.failure(ValidationError("Only the raffle creator can draw early.", raffle_id=raffle_id))
        if phase_of(raffle, now) == RafflePhase.ENDED:
            return Result.success({"raffle_id": raffle_id, "winner": raffle.winner})
        if raffle.sold < raffle.supply:
            return Result.failure(
                ValidationError("Raffle is not sold out yet.", sold=raffle.sold, supply=raffle.supply)
            )
        try:
            if phase_of(raffle, now) == RafflePhase.ACTIVE:
                self.store.update_raffle(raffle_id, {"ends_at": now.isoformat()})
            winner = self.store.pick_raffle_winner(raffle_id)
        except RaffleError as exc:
            logger.warning("manual_draw_failed raffle=%s error=%s", raffle_id, exc.message)
            return Result.failure(LifecycleError(f"Draw failed: {exc.message}", raffle_id=raffle_id))
        logger.info("manual_draw raffle=%s caller=%s winner=%s", raffle_id, caller, winner)
        return Result.success({"raffle_id": raffle_id, "winner": winner})


def start_draw_scheduler(controller: LifecycleController, interval_seconds: int) -> Optional[threading.Thread]:
    """Spawn the background draw loop; a second call is a no-op."""
    global _SCHEDULER_THREAD
    if _SCHEDULER_THREAD is not None:
        return _SCHEDULER_THREAD
    interval_seconds = max(5, int(interval_seconds))

    def _loop():
        while True:
            try:
                result = controller.refresh()
                if not result.ok:
                    logger.warning("draw_scheduler_refresh_failed error=%s", result.error)
            except Exception as exc:  # noqa: BLE001
                logger.warning("draw_scheduler_loop_failed error=%s", exc, exc_info=True)
            time.sleep(interval_seconds)

    _SCHEDULER_THREAD = threading.Thread(target=_loop, daemon=True, name="draw-scheduler")
    _SCHEDULER_THREAD.start()
    logger.info("draw_scheduler_started interval=%s", interval_seconds)
    return _SCHEDULER_THREAD
