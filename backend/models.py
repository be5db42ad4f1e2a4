"""Raffle, Entry and asset shapes shared by the engine modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from config import NATIVE_SYMBOL
from errors import StoreError

MIN_SUPPLY = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenPrize(BaseModel):
    mint: str
    symbol: Optional[str] = None
    amount: Optional[float] = None


class Raffle(BaseModel):
    id: str
    name: str
    image: Optional[str] = None
    price: Decimal
    payment_symbol: str = NATIVE_SYMBOL
    payment_mint: Optional[str] = None
    supply: int = Field(..., ge=MIN_SUPPLY)
    sold: int = Field(0, ge=0)
    limit_per_wallet: int = Field(1, ge=1)
    created_at: Optional[datetime] = None
    ends_at: datetime
    creator: str
    winner: Optional[str] = None
    floor_price: Optional[float] = None
    status: str = "active"
    prize_nft_mint: Optional[str] = None
    token_prize: Optional[TokenPrize] = None

    @property
    def remaining(self) -> int:
        return max(self.supply - self.sold, 0)

    @property
    def is_native(self) -> bool:
        return not self.payment_mint or self.payment_symbol.upper() == NATIVE_SYMBOL

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Raffle":
        token_prize = None
        if row.get("prize_token_mint"):
            token_prize = TokenPrize(
                mint=row["prize_token_mint"],
                symbol=row.get("prize_token_symbol"),
                amount=row.get("prize_token_amount"),
            )
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "Raffle",
            image=row.get("image_url"),
            price=Decimal(str(row.get("ticket_price") or 0)),
            payment_symbol=row.get("payment_symbol") or NATIVE_SYMBOL,
            payment_mint=row.get("payment_mint"),
            supply=int(row.get("ticket_supply") or 0),
            sold=int(row.get("ticket_sold") or 0),
            limit_per_wallet=int(row.get("limit_per_wallet") or 1),
            created_at=row.get("created_at"),
            ends_at=row["ends_at"],
            creator=row["creator_address"],
            winner=row.get("winner_address"),
            floor_price=row.get("floor_price"),
            status=row.get("status") or "active",
            prize_nft_mint=row.get("prize_nft_mint"),
            token_prize=token_prize,
        )

    def prize_description(self) -> str:
        lines = [f"• {self.name}"]
        if self.token_prize and self.token_prize.amount is not None:
            lines.append(f"• {self.token_prize.amount:,} {self.token_prize.symbol or ''}".rstrip())
        return "\n".join(lines)


def parse_raffle(row: Dict[str, Any]) -> Raffle:
    """Raffle.from_row for single-row lookups; a row breaking the model invariants is a store fault."""
    try:
        return Raffle.from_row(row)
    except (KeyError, ValueError) as exc:
        raise StoreError(f"Malformed raffle row: {exc}", raffle_id=row.get("id")) from exc


class Entry(BaseModel):
    raffle_id: str
    wallet: str
    quantity: int = Field(..., ge=1)
    created_at: Optional[datetime] = None
    raffle_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Entry":
        raffle = row.get("raffles") or {}
        return cls(
            raffle_id=str(row.get("raffle_id", "")),
            wallet=row["wallet_address"],
            quantity=int(row["quantity"]),
            created_at=row.get("created_at"),
            raffle_name=raffle.get("name") if isinstance(raffle, dict) else None,
        )


class AssetKind(str, Enum):
    COLLECTIBLE = "collectible"
    FUNGIBLE_TOKEN = "fungible_token"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class IndexedAsset:
    """Explicit input schema for one indexer item."""

    id: str
    interface: str = ""
    decimals: Optional[int] = None
    balance: int = 0
    name: str = ""
    symbol: str = ""
    image: Optional[str] = None
    token_standard: str = ""
    collection_name: Optional[str] = None
    collection_key: Optional[str] = None
    frozen: bool = False
    burnt: bool = False
    deleted: bool = False


@dataclass(frozen=True)
class ClassifiedAsset:
    kind: AssetKind
    mint: str
    name: str
    image: Optional[str] = None
    decimals: int = 0
    amount: float = 0.0
    symbol: str = ""
    collection: str = "Uncategorized"
    verified: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "mint": self.mint,
            "name": self.name,
            "image": self.image,
            "decimals": self.decimals,
            "amount": self.amount,
            "symbol": self.symbol,
            "collection": self.collection,
            "verified": self.verified,
        }


@dataclass
class AssetCatalog:
    collectibles: List[ClassifiedAsset] = field(default_factory=list)
    tokens: List[ClassifiedAsset] = field(default_factory=list)
    source: str = "das"


@dataclass
class PendingPurchase:
    raffle_id: str
    buyer: str
    creator: str
    quantity: int
    currency: str
    decimals: int
    unit_price_units: int
    commission_per_ticket: int
    creator_per_ticket: int
    mint: Optional[str] = None

    @property
    def commission_total(self) -> int:
        return self.commission_per_ticket * self.quantity

    @property
    def creator_total(self) -> int:
        return self.creator_per_ticket * self.quantity

    @property
    def total_units(self) -> int:
        return self.commission_total + self.creator_total
