from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field
from solana.rpc.api import Client as SolanaClient

from asset_classifier import default_strategies, filter_prizes, group_collectibles, load_wallet_assets
from chain import ChainClient
from config import Settings, settings
from db import init_db, make_engine
from errors import (
    BookkeepingError,
    ChainError,
    EligibilityError,
    IndexerError,
    InsufficientFunds,
    LifecycleError,
    RaffleError,
    Result,
    StoreError,
    ValidationError,
    WalletError,
)
from floor_price import FloorPriceClient, FloorPriceError, update_raffle_floor
from lifecycle import LifecycleController, SortOrder, my_raffles, sort_active, start_draw_scheduler
from models import Entry, Raffle, parse_raffle
from notifications import SeenOutcomeStore, WebhookSink, select_celebration
from purchase import PurchaseService, prior_ticket_count
from raffle_creation import CreateRaffleRequest, CreationService
from raffle_store import SupabaseStore
from settlement import SettlementRecorder, start_reconciler
from tx_builder import PurchaseBuilder

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("raffles")

STATUS_BY_ERROR = [
    (InsufficientFunds, 402),
    (ValidationError, 400),
    (EligibilityError, 400),
    (WalletError, 400),
    (LifecycleError, 409),
    (BookkeepingError, 500),
    (ChainError, 502),
    (IndexerError, 502),
    (FloorPriceError, 502),
    (StoreError, 503),
]


@dataclass
class Services:
    settings: Settings
    store: object
    chain: ChainClient
    lifecycle: LifecycleController
    seen: SeenOutcomeStore
    purchases: PurchaseService
    recorder: SettlementRecorder
    creation: CreationService
    floor: FloorPriceClient
    sink: WebhookSink
    asset_strategies: list


def build_services(cfg: Settings, store=None, sol_client=None, engine=None, asset_strategies=None, sink=None) -> Services:
    store = store or SupabaseStore(cfg.supabase_url, cfg.supabase_service_key)
    sol_client = sol_client or SolanaClient(cfg.rpc_url)
    engine = engine or make_engine(cfg.database_url)
    init_db(engine)
    sink = sink or WebhookSink(cfg.discord_webhook_url, cfg.site_url)
    chain = ChainClient(sol_client)
    recorder = SettlementRecorder(store, engine)
    builder = PurchaseBuilder(sol_client, cfg.treasury_wallet, cfg.commission_bps, cfg.payment_token_decimals)
    floor = FloorPriceClient(cfg.magic_eden_base, cfg.magic_eden_api_key)
    return Services(
        settings=cfg,
        store=store,
        chain=chain,
        lifecycle=LifecycleController(store, sink),
        seen=SeenOutcomeStore(engine, cfg.seen_outcomes_per_wallet),
        purchases=PurchaseService(store, builder, chain, recorder, cfg.confirm_timeout_seconds),
        recorder=recorder,
        creation=CreationService(store, chain, cfg, sink, floor),
        floor=floor,
        sink=sink,
        asset_strategies=asset_strategies
        or default_strategies(cfg.rpc_url, cfg.indexer_page_limit, cfg.indexer_max_pages),
    )


_SERVICES: Optional[Services] = None
_SERVICES_LOCK = threading.Lock()


def get_services() -> Services:
    global _SERVICES
    with _SERVICES_LOCK:
        if _SERVICES is None:
            try:
                _SERVICES = build_services(settings)
            except StoreError as exc:
                raise HTTPException(status_code=503, detail=exc.message) from exc
        return _SERVICES


def raise_for(result: Result):
    """Unwrap a Result or turn its error into an HTTPException."""
    if result.ok:
        return result.value
    error = result.error
    status = 500
    for cls, code in STATUS_BY_ERROR:
        if isinstance(error, cls):
            status = code
            break
    if status >= 500:
        logger.error("request_failed kind=%s error=%s", error.kind, error.message)
    raise HTTPException(status_code=status, detail=error.to_dict())


def store_call(fn, *args):
    try:
        return fn(*args)
    except RaffleError as exc:
        return raise_for(Result.failure(exc))


class BuyBuildRequest(BaseModel):
    wallet: str
    quantity: int = Field(1, ge=1)


class BuyConfirmRequest(BaseModel):
    wallet: str
    quantity: int = Field(1, ge=1)
    signature: str


class DrawRequest(BaseModel):
    wallet: str


class CreateConfirmRequest(BaseModel):
    raffle: CreateRaffleRequest
    signature: str


class FetchFloorRequest(BaseModel):
    raffleId: str
    mintAddress: str


def raffle_to_dict(raffle: Raffle) -> dict:
    data = raffle.model_dump(mode="json")
    data["remaining"] = raffle.remaining
    return data


app = FastAPI(title="Micros Raffles API", version="0.1.0")


@app.on_event("startup")
def startup_event():
    if not settings.supabase_url:
        logger.warning("startup_store_not_configured background_jobs=disabled")
        return
    services = get_services()
    if settings.draw_scheduler_enabled:
        start_draw_scheduler(services.lifecycle, settings.draw_interval_seconds)
    start_reconciler(services.recorder, settings.reconcile_interval_seconds)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/raffles")
def list_raffles(wallet: Optional[str] = None, sort: SortOrder = SortOrder.NEWEST, services: Services = Depends(get_services)):
    listing = raise_for(services.lifecycle.refresh())
    celebration = select_celebration(wallet, listing.past, services.seen)
    return {
        "active": [raffle_to_dict(r) for r in sort_active(listing.active, sort)],
        "past": [raffle_to_dict(r) for r in listing.past],
        "mine": [raffle_to_dict(r) for r in my_raffles(listing, wallet)] if wallet else [],
        "celebration": celebration.to_dict() if celebration else None,
        "draw_errors": listing.draw_errors,
    }


@app.get("/raffles/{raffle_id}")
def get_raffle(raffle_id: str, wallet: Optional[str] = None, services: Services = Depends(get_services)):
    row = store_call(services.store.get_raffle, raffle_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Raffle not found")
    data = raffle_to_dict(store_call(parse_raffle, row))
    if wallet:
        data["my_tickets"] = prior_ticket_count(services.store, raffle_id, wallet)
    return data


@app.get("/raffles/{raffle_id}/participants")
def raffle_participants(raffle_id: str, services: Services = Depends(get_services)):
    rows = store_call(services.store.list_entries, raffle_id)
    tickets = defaultdict(int)
    for row in rows:
        tickets[row["wallet_address"]] += int(row.get("quantity") or 0)
    leaderboard = sorted(tickets.items(), key=lambda kv: kv[1], reverse=True)
    return {
        "raffle_id": raffle_id,
        "participants": [{"wallet": w, "tickets": t} for w, t in leaderboard],
        "total_tickets": sum(tickets.values()),
    }


@app.get("/activity")
def live_activity(limit: int = 10, services: Services = Depends(get_services)):
    rows = store_call(services.store.recent_entries, min(max(limit, 1), 50))
    return [Entry.from_row(r).model_dump(mode="json") for r in rows]


@app.post("/raffles/{raffle_id}/buy/build")
def build_purchase(raffle_id: str, req: BuyBuildRequest, services: Services = Depends(get_services)):
    return raise_for(services.purchases.prepare(raffle_id, req.quantity, req.wallet))


@app.post("/raffles/{raffle_id}/buy/confirm")
def confirm_purchase(raffle_id: str, req: BuyConfirmRequest, services: Services = Depends(get_services)):
    return raise_for(services.purchases.settle(raffle_id, req.quantity, req.wallet, req.signature))


@app.post("/raffles/{raffle_id}/draw")
def draw_raffle(raffle_id: str, req: DrawRequest, services: Services = Depends(get_services)):
    return raise_for(services.lifecycle.request_draw(raffle_id, req.wallet))


@app.api_route("/api/cron/pick-winner", methods=["GET", "POST"])
def cron_pick_winner(authorization: Optional[str] = Header(None), services: Services = Depends(get_services)):
    secret = services.settings.cron_secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    listing = raise_for(services.lifecycle.refresh())
    return {
        "success": True,
        "processed": len(listing.drawn) + len(listing.draw_errors),
        "results": [{"id": rid, "winner": winner} for rid, winner in listing.drawn.items()]
        + [{"id": rid, "winner": None, "error": err} for rid, err in listing.draw_errors.items()],
    }


@app.post("/raffles/create/build")
def build_creation(req: CreateRaffleRequest, services: Services = Depends(get_services)):
    return raise_for(services.creation.prepare_creation(req))


@app.post("/raffles/create/confirm")
def confirm_creation(req: CreateConfirmRequest, services: Services = Depends(get_services)):
    raffle = raise_for(services.creation.finalize_creation(req.raffle, req.signature))
    return raffle_to_dict(raffle)


@app.get("/wallet/{owner}/assets")
def wallet_assets(owner: str, only_verified: bool = False, services: Services = Depends(get_services)):
    catalog = raise_for(load_wallet_assets(owner, services.asset_strategies))
    prizes = filter_prizes(catalog, services.settings.prize_keyword_blocklist(), only_verified)
    return {
        "source": prizes.source,
        "collections": group_collectibles(prizes.collectibles),
        "tokens": [t.to_dict() for t in prizes.tokens],
    }


@app.post("/fetch-floor")
def fetch_floor(req: FetchFloorRequest, services: Services = Depends(get_services)):
    found = raise_for(update_raffle_floor(services.store, services.floor, req.raffleId, req.mintAddress))
    return {"success": True, "floorPrice": found["floor_price"], "collection": found["collection"]}


@app.get("/admin/settlements/mismatches")
def settlement_mismatches(services: Services = Depends(get_services)):
    return {"pending": [p.model_dump() for p in services.recorder.pending()], "mismatches": services.recorder.detect_mismatches()}
