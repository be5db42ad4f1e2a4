"""
Post-confirmation bookkeeping for ticket purchases.

Two remote writes per purchase, not transactional with each other:
1. `increment_ticket_sold` (atomic, server-side)
2. append an `entries` row

Funds have already moved when this runs, so a failed write is logged to the
local SettlementLog and retried by `reconcile`; the purchase itself is still
reported as successful.

The log row is committed as `pending` before either write, so the signature
primary key decides which of two concurrent confirmations performs them.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from db import SettlementLog
from errors import BookkeepingError, RaffleError, Result, StoreError

logger = logging.getLogger("raffles.settlement")

PENDING = "pending"
RECORDED = "recorded"
INCREMENT_FAILED = "increment_failed"
ENTRY_FAILED = "entry_failed"
FAILED = (INCREMENT_FAILED, ENTRY_FAILED)

_RECONCILER_THREAD: Optional[threading.Thread] = None


class SettlementRecorder:
    def __init__(self, store, engine) -> None:
        self.store = store
        self.engine = engine

    def lookup(self, signature: str) -> Optional[Result]:
        with Session(self.engine) as db:
            existing = db.get(SettlementLog, signature)
            if existing is None:
                return None
            logger.info("settlement_replay sig=%s status=%s", signature, existing.status)
            return self._outcome(existing)

    def record(self, raffle_id: str, wallet: str, quantity: int, signature: str) -> Result:
        with Session(self.engine) as db:
            log = SettlementLog(signature=signature, raffle_id=raffle_id, wallet=wallet, quantity=quantity, status=PENDING)
            db.add(log)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self.lookup(signature)
            db.refresh(log)

            log.status, log.error = self._apply(log, INCREMENT_FAILED)
            log.updated_at = time.time()
            db.add(log)
            db.commit()
            db.refresh(log)
            return self._outcome(log)

    def _apply(self, log: SettlementLog, start: str) -> tuple:
        """Run the remaining writes for `log` from step `start`; returns (status, error)."""
        if start == INCREMENT_FAILED:
            try:
                self.store.increment_ticket_sold(log.raffle_id, log.quantity)
            except RaffleError as exc:
                err = BookkeepingError(f"Ticket count increment failed: {exc.message}", raffle_id=log.raffle_id)
                logger.error(
                    "settlement_increment_failed raffle=%s wallet=%s quantity=%s sig=%s error=%s",
                    log.raffle_id,
                    log.wallet,
                    log.quantity,
                    log.signature,
                    exc.message,
                )
                return INCREMENT_FAILED, err.message
        try:
            self.store.insert_entry(log.raffle_id, log.wallet, log.quantity)
        except RaffleError as exc:
            err = BookkeepingError(f"Entry append failed: {exc.message}", raffle_id=log.raffle_id)
            logger.error(
                "settlement_entry_failed raffle=%s wallet=%s quantity=%s sig=%s error=%s",
                log.raffle_id,
                log.wallet,
                log.quantity,
                log.signature,
                exc.message,
            )
            return ENTRY_FAILED, err.message
        logger.info(
            "settlement_recorded raffle=%s wallet=%s quantity=%s sig=%s",
            log.raffle_id,
            log.wallet,
            log.quantity,
            log.signature,
        )
        return RECORDED, None

    @staticmethod
    def _outcome(log: SettlementLog) -> Result:
        value = {
            "signature": log.signature,
            "raffle_id": log.raffle_id,
            "quantity": log.quantity,
            "status": log.status,
            "needs_reconcile": log.status in FAILED,
        }
        warnings = [log.error] if log.error else []
        return Result.success(value, warnings=warnings)

    def pending(self) -> List[SettlementLog]:
        with Session(self.engine) as db:
            return list(db.exec(select(SettlementLog).where(col(SettlementLog.status).in_(FAILED))).all())

    def reconcile(self) -> Dict[str, int]:
        """Retry every logged failure from the step that failed."""
        fixed = 0
        still_failing = 0
        with Session(self.engine) as db:
            rows = db.exec(select(SettlementLog).where(col(SettlementLog.status).in_(FAILED))).all()
            for log in rows:
                log.status, log.error = self._apply(log, log.status)
                log.attempts += 1
                log.updated_at = time.time()
                db.add(log)
                if log.status == RECORDED:
                    fixed += 1
                else:
                    still_failing += 1
            db.commit()
        if fixed or still_failing:
            logger.info("settlement_reconcile fixed=%s still_failing=%s", fixed, still_failing)
        return {"fixed": fixed, "still_failing": still_failing}

    def detect_mismatches(self) -> List[dict]:
        """Raffles whose sold counter disagrees with the sum of their entries."""
        try:
            totals = self.store.entry_totals()
            raffles = self.store.list_raffles()
        except StoreError as exc:
            logger.warning("settlement_mismatch_scan_failed error=%s", exc)
            return []
        mismatches = []
        for row in raffles:
            raffle_id = str(row["id"])
            sold = int(row.get("ticket_sold") or 0)
            entered = totals.get(raffle_id, 0)
            if sold != entered:
                mismatches.append({"raffle_id": raffle_id, "ticket_sold": sold, "entry_total": entered})
                logger.warning("settlement_mismatch raffle=%s ticket_sold=%s entry_total=%s", raffle_id, sold, entered)
        return mismatches


def start_reconciler(recorder: SettlementRecorder, interval_seconds: int) -> Optional[threading.Thread]:
    global _RECONCILER_THREAD
    if _RECONCILER_THREAD is not None:
        return _RECONCILER_THREAD
    interval_seconds = max(30, int(interval_seconds))

    def _loop():
        while True:
            try:
                recorder.reconcile()
                recorder.detect_mismatches()
            except Exception as exc:  # noqa: BLE001
                logger.warning("reconciler_loop_failed error=%s", exc, exc_info=True)
            time.sleep(interval_seconds)

    _RECONCILER_THREAD = threading.Thread(target=_loop, daemon=True, name="settlement-reconciler")
    _RECONCILER_THREAD.start()
    return _RECONCILER_THREAD
