from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Set

import requests
from sqlmodel import Session, select

from db import SeenOutcome, SeenWatermark
from models import Raffle, as_utc

logger = logging.getLogger("raffles.notify")

MICROS_COLORS = [0xFFC0F5, 0x00E3FA, 0x5CFCA9, 0xFFD55F, 0xFF9161]
FOOTER_TEXT = "Micros Raffles"


class SeenOutcomeStore:
    """Per-wallet record of raffle outcomes already surfaced.

    At most `max_per_wallet` rows are kept. Pruning removes the raffles that
    ended earliest and moves the wallet's watermark up to the latest end it
    removed, so a pruned outcome still counts as seen.
    """

    def __init__(self, engine, max_per_wallet: int = 200) -> None:
        self.engine = engine
        self.max_per_wallet = max_per_wallet

    def watermark(self, wallet: str) -> Optional[float]:
        with Session(self.engine) as db:
            mark = db.get(SeenWatermark, wallet)
            return mark.ended_at if mark is not None else None

    def has_seen(self, wallet: str, raffle_id: str, ended_at: Optional[float] = None) -> bool:
        with Session(self.engine) as db:
            if db.get(SeenOutcome, (wallet, raffle_id)) is not None:
                return True
            mark = db.get(SeenWatermark, wallet)
        return mark is not None and ended_at is not None and ended_at <= mark.ended_at

    def seen_ids(self, wallet: str) -> Set[str]:
        with Session(self.engine) as db:
            rows = db.exec(select(SeenOutcome.raffle_id).where(SeenOutcome.wallet == wallet)).all()
        return set(rows)

    def mark_seen(self, wallet: str, raffle_id: str, ended_at: float = 0.0) -> None:
        with Session(self.engine) as db:
            if db.get(SeenOutcome, (wallet, raffle_id)) is None:
                db.add(SeenOutcome(wallet=wallet, raffle_id=raffle_id, seen_at=time.time(), ended_at=ended_at))
                db.commit()
            self._prune(db, wallet)

    def _prune(self, db: Session, wallet: str) -> None:
        stale = db.exec(
            select(SeenOutcome)
            .where(SeenOutcome.wallet == wallet)
            .order_by(SeenOutcome.ended_at.desc(), SeenOutcome.seen_at.desc())
            .offset(self.max_per_wallet)
        ).all()
        if not stale:
            return
        horizon = max(row.ended_at for row in stale)
        mark = db.get(SeenWatermark, wallet)
        if mark is None:
            db.add(SeenWatermark(wallet=wallet, ended_at=horizon))
        elif horizon > mark.ended_at:
            mark.ended_at = horizon
            db.add(mark)
        for row in stale:
            db.delete(row)
        db.commit()
        logger.info("seen_outcomes_pruned wallet=%s removed=%s watermark=%s", wallet, len(stale), horizon)


@dataclass(frozen=True)
class Celebration:
    kind: str  # you_won | winner_drawn
    raffle_id: str
    raffle_name: str
    image: Optional[str] = None

    @property
    def message(self) -> str:
        if self.kind == "you_won":
            return f"Congratulations! You won {self.raffle_name}."
        return f"A winner has been drawn for {self.raffle_name}! 🎊"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "raffle_id": self.raffle_id,
            "raffle_name": self.raffle_name,
            "image": self.image,
            "message": self.message,
        }


def ended_ts(raffle: Raffle) -> float:
    return as_utc(raffle.ends_at).timestamp()


def select_celebration(wallet: Optional[str], raffles: Iterable[Raffle], store: SeenOutcomeStore) -> Optional[Celebration]:
    """Pick at most one event for this refresh; a personal win beats a community draw."""
    if not wallet:
        return None
    raffles = [r for r in raffles if r.winner]
    seen = store.seen_ids(wallet)
    horizon = store.watermark(wallet)
    unseen = [r for r in raffles if r.id not in seen and (horizon is None or ended_ts(r) > horizon)]

    chosen = next((r for r in unseen if r.winner == wallet), None)
    kind = "you_won"
    if chosen is None:
        chosen = next((r for r in unseen if r.winner != wallet), None)
        kind = "winner_drawn"
    if chosen is None:
        return None
    store.mark_seen(wallet, chosen.id, ended_ts(chosen))
    logger.info("celebration wallet=%s raffle=%s kind=%s", wallet, chosen.id, kind)
    return Celebration(kind=kind, raffle_id=chosen.id, raffle_name=chosen.name, image=chosen.image)


def short_address(address: str) -> str:
    return f"{address[:8]}...{address[-8:]}"


def raffle_ended_embed(raffle: Raffle, participant_count: int, site_url: str) -> dict:
    winner = raffle.winner or ""
    return {
        "title": f"🏁 RAFFLE ENDED: {raffle.name}",
        "url": site_url,
        "color": MICROS_COLORS[2],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": FOOTER_TEXT, "icon_url": f"{site_url}/assets/micros.png"},
        "thumbnail": {"url": raffle.image},
        "fields": [
            {"name": "👑 Winner", "value": f"[{short_address(winner)}](https://solscan.io/account/{winner})", "inline": False},
            {"name": "👥 Participants", "value": str(participant_count or 0), "inline": True},
            {"name": "🎫 Tickets Sold", "value": f"{raffle.sold}/{raffle.supply}", "inline": True},
            {"name": "🎁 Prize Info", "value": raffle.prize_description(), "inline": False},
        ],
    }


def raffle_created_embed(raffle: Raffle, site_url: str) -> dict:
    return {
        "title": f"🎟️ NEW RAFFLE: {raffle.name}",
        "url": site_url,
        "color": MICROS_COLORS[1],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": FOOTER_TEXT, "icon_url": f"{site_url}/assets/micros.png"},
        "thumbnail": {"url": raffle.image},
        "fields": [
            {"name": "💰 Ticket Price", "value": f"{raffle.price} {raffle.payment_symbol}", "inline": True},
            {"name": "🎫 Supply", "value": str(raffle.supply), "inline": True},
            {"name": "⏳ Ends", "value": raffle.ends_at.isoformat(), "inline": True},
            {"name": "🎁 Prize Info", "value": raffle.prize_description(), "inline": False},
        ],
    }


class WebhookSink:
    """Fire-and-forget Discord webhook delivery. Failures are logged, never raised."""

    def __init__(self, url: Optional[str], site_url: str, http=None, background: bool = True, timeout: float = 10.0) -> None:
        self.url = url
        self.site_url = site_url
        self.http = http or requests
        self.background = background
        self.timeout = timeout

    def raffle_created(self, raffle: Raffle) -> None:
        self.publish("raffle_created", raffle.id, raffle_created_embed(raffle, self.site_url))

    def raffle_ended(self, raffle: Raffle, participant_count: int) -> None:
        self.publish("raffle_ended", raffle.id, raffle_ended_embed(raffle, participant_count, self.site_url))

    def publish(self, event: str, raffle_id: str, embed: dict) -> None:
        if not self.url:
            logger.info("webhook_skipped event=%s raffle=%s reason=not_configured", event, raffle_id)
            return
        payload = {"embeds": [embed]}
        if self.background:
            threading.Thread(target=self.deliver, args=(event, raffle_id, payload), daemon=True).start()
        else:
            self.deliver(event, raffle_id, payload)

    def deliver(self, event: str, raffle_id: str, payload: dict) -> bool:
        try:
            resp = self.http.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            logger.warning("webhook_failed event=%s raffle=%s error=%s", event, raffle_id, exc, exc_info=True)
            return False
        logger.info("webhook_sent event=%s raffle=%s", event, raffle_id)
        return True
