"""Local SQL ledger: seen-outcome dedup records and per-signature settlement log."""

from __future__ import annotations

import time
from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel, create_engine


class SeenOutcome(SQLModel, table=True):
    __table_args__ = (Index("ix_seenoutcome_wallet_ended_at", "wallet", "ended_at"),)

    wallet: str = Field(primary_key=True)
    raffle_id: str = Field(primary_key=True)
    seen_at: float = Field(default_factory=time.time)
    # raffle end as a unix timestamp; pruning drops the oldest ends first
    ended_at: float = 0.0


class SeenWatermark(SQLModel, table=True):
    """Latest raffle end pruned for a wallet; anything ending at or before it counts as seen."""

    wallet: str = Field(primary_key=True)
    ended_at: float = 0.0


class SettlementLog(SQLModel, table=True):
    signature: str = Field(primary_key=True)
    raffle_id: str = Field(index=True)
    wallet: str
    quantity: int
    # pending | recorded | increment_failed | entry_failed
    status: str = "recorded"
    error: Optional[str] = None
    attempts: int = 1
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


def make_engine(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine) -> None:
    SQLModel.metadata.create_all(engine)
