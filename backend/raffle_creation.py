"""
Raffle creation: request validation, the platform-fee transaction and the
row insert after the fee transfer confirms.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from chain import ChainClient
from config import NATIVE_SYMBOL, Settings
from errors import ChainError, RaffleError, Result, StoreError, ValidationError
from floor_price import FloorPriceClient, queue_floor_update
from models import MIN_SUPPLY, Raffle, as_utc, utcnow
from tx_builder import (
    build_creation_fee_ixs,
    creation_fee_lamports,
    instruction_to_dict,
    lamports_to_sol,
    message_from_instructions,
    to_pubkey,
)

logger = logging.getLogger("raffles.creation")

DEFAULT_IMAGE = "./assets/micros.png"


class PrizeNft(BaseModel):
    mint: str
    name: str
    image: Optional[str] = None


class PrizeToken(BaseModel):
    mint: str
    symbol: str
    amount: Optional[Decimal] = None
    image: Optional[str] = None


class CreateRaffleRequest(BaseModel):
    creator: str
    ticket_price: Optional[Decimal] = None
    ticket_supply: Optional[int] = None
    limit_per_wallet: int = Field(1, ge=1)
    ends_at: Optional[datetime] = None
    payment_currency: str = NATIVE_SYMBOL
    prize_nft: Optional[PrizeNft] = None
    prize_token: Optional[PrizeToken] = None
    holder_collections: List[str] = Field(default_factory=list)
    agree_to_terms: bool = False

    @property
    def holder_only(self) -> bool:
        return any(c.strip() for c in self.holder_collections)

    def display_name(self) -> str:
        if self.prize_nft:
            return self.prize_nft.name
        if self.prize_token:
            return f"{self.prize_token.amount} {self.prize_token.symbol}"
        return "New Raffle"

    def display_image(self) -> str:
        if self.prize_nft and self.prize_nft.image:
            return self.prize_nft.image
        if self.prize_token and self.prize_token.image:
            return self.prize_token.image
        return DEFAULT_IMAGE


def validate_creation(request: CreateRaffleRequest, settings: Settings, now: Optional[datetime] = None) -> Result:
    """Checks run in the order the create form reports them."""
    now = now or utcnow()
    allowlist = settings.creator_allowlist()
    if allowlist and request.creator not in allowlist:
        return Result.failure(ValidationError("This wallet is not authorized to create raffles.", creator=request.creator))
    if not request.ticket_supply or request.ticket_supply < MIN_SUPPLY:
        return Result.failure(ValidationError(f"Minimum ticket supply is {MIN_SUPPLY}.", ticket_supply=request.ticket_supply))
    if request.ticket_price is None or request.ticket_price <= 0:
        return Result.failure(ValidationError("Please enter a valid ticket price."))
    if not request.prize_nft and not request.prize_token:
        return Result.failure(ValidationError("Please select at least one prize (NFT or Tokens)."))
    if request.prize_token and (request.prize_token.amount is None or request.prize_token.amount <= 0):
        return Result.failure(ValidationError("Please enter a valid token amount."))
    if not request.ends_at:
        return Result.failure(ValidationError("Please select an end date."))
    if as_utc(request.ends_at) <= now:
        return Result.failure(ValidationError("End date must be in the future."))
    if not request.agree_to_terms:
        return Result.failure(ValidationError("You must agree to the Terms & Conditions to create a raffle."))
    currency = request.payment_currency.upper()
    if currency not in (NATIVE_SYMBOL, settings.payment_token_symbol.upper()):
        return Result.failure(ValidationError(f"Unsupported payment currency {request.payment_currency}."))
    return Result.success(request)


class CreationService:
    def __init__(self, store, chain: ChainClient, settings: Settings, sink=None, floor_client: Optional[FloorPriceClient] = None) -> None:
        self.store = store
        self.chain = chain
        self.settings = settings
        self.sink = sink
        self.floor_client = floor_client

    def fee_lamports(self, request: CreateRaffleRequest) -> int:
        return creation_fee_lamports(self.settings.creation_fee_sol, self.settings.holder_only_fee_sol, request.holder_only)

    def prepare_creation(self, request: CreateRaffleRequest) -> Result:
        checked = validate_creation(request, self.settings)
        if not checked.ok:
            return checked
        try:
            creator = to_pubkey(request.creator)
            treasury = to_pubkey(self.settings.treasury_wallet)
            lamports = self.fee_lamports(request)
            ixs = build_creation_fee_ixs(creator, treasury, lamports)
            blockhash = self.chain.latest_blockhash()
        except RaffleError as exc:
            return Result.failure(exc)
        except Exception as exc:  # noqa: BLE001
            return Result.failure(ValidationError(f"Invalid wallet address: {exc}"))
        logger.info("creation_prepared creator=%s fee_lamports=%s holder_only=%s", request.creator, lamports, request.holder_only)
        return Result.success(
            {
                "fee_lamports": lamports,
                "fee_sol": lamports_to_sol(lamports),
                "blockhash": blockhash,
                "message": message_from_instructions(ixs, creator, blockhash),
                "instructions": [instruction_to_dict(ix) for ix in ixs],
            }
        )

    def row_for(self, request: CreateRaffleRequest) -> dict:
        token = request.prize_token
        is_native = request.payment_currency.upper() == NATIVE_SYMBOL
        return {
            "creator_address": request.creator,
            "name": request.display_name(),
            "image_url": request.display_image(),
            "ticket_price": float(request.ticket_price),
            "ticket_supply": request.ticket_supply,
            "limit_per_wallet": request.limit_per_wallet,
            "ends_at": as_utc(request.ends_at).isoformat(),
            "prize_nft_mint": request.prize_nft.mint if request.prize_nft else None,
            "prize_token_mint": token.mint if token else None,
            "prize_token_amount": float(token.amount) if token else None,
            "prize_token_symbol": token.symbol if token else None,
            "payment_mint": None if is_native else self.settings.payment_token_mint,
            "payment_symbol": NATIVE_SYMBOL if is_native else self.settings.payment_token_symbol,
            "status": "active",
        }

    def finalize_creation(self, request: CreateRaffleRequest, signature: str) -> Result:
        checked = validate_creation(request, self.settings)
        if not checked.ok:
            return checked
        if not signature:
            return Result.failure(ValidationError("Missing transaction signature."))
        try:
            confirmed = self.chain.wait_for_confirmation(signature, "processed", self.settings.confirm_timeout_seconds)
        except ChainError as exc:
            return Result.failure(exc)
        if not confirmed:
            return Result.failure(ChainError("Creation fee transaction was not confirmed.", signature=signature))

        try:
            row = self.store.insert_raffle(self.row_for(request))
        except StoreError as exc:
            logger.error("raffle_insert_failed creator=%s sig=%s error=%s", request.creator, signature, exc.message)
            return Result.failure(exc)
        raffle = Raffle.from_row(row)
        logger.info("raffle_created raffle=%s creator=%s sig=%s", raffle.id, raffle.creator, signature)

        if self.sink is not None:
            self.sink.raffle_created(raffle)
        if self.floor_client is not None and raffle.prize_nft_mint:
            queue_floor_update(self.store, self.floor_client, raffle.id, raffle.prize_nft_mint)
        return Result.success(raffle)
