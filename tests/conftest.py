"""Shared fakes: in-memory remote store, Solana RPC client, HTTP transport and webhook sink."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import pytest
import requests
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature

from db import init_db, make_engine
from errors import StoreError
from tx_builder import TOKEN_PROGRAM_ID, derive_ata

CREATOR = str(Pubkey.new_unique())
BUYER = str(Pubkey.new_unique())
TREASURY = str(Pubkey.new_unique())
MINT = str(Pubkey.new_unique())

NOW = datetime.now(timezone.utc).replace(microsecond=0)


def sig(n: int) -> str:
    return str(Signature(bytes([n]) * 64))


def _as_dt(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def raffle_row(raffle_id: str = "r1", **overrides) -> dict:
    row = {
        "id": raffle_id,
        "name": f"Prize {raffle_id}",
        "image_url": "https://img.example/prize.png",
        "ticket_price": 1.0,
        "payment_symbol": "SOL",
        "payment_mint": None,
        "ticket_supply": 10,
        "ticket_sold": 0,
        "limit_per_wallet": 5,
        "created_at": NOW - timedelta(days=1),
        "ends_at": NOW + timedelta(days=1),
        "creator_address": CREATOR,
        "winner_address": None,
        "status": "active",
    }
    row.update(overrides)
    return row


class InMemoryStore:
    """Same surface as SupabaseStore; `fail` names methods that should raise StoreError."""

    def __init__(self, rows: Optional[List[dict]] = None) -> None:
        self.raffles: Dict[str, dict] = {str(r["id"]): dict(r) for r in rows or []}
        self.entries: List[dict] = []
        self.fail: set = set()
        self.draw_calls: List[str] = []
        self._next_id = 100

    def _check(self, name: str) -> None:
        if name in self.fail:
            raise StoreError(f"{name} unavailable")

    def list_raffles(self) -> List[dict]:
        self._check("list_raffles")
        return sorted((dict(r) for r in self.raffles.values()), key=lambda r: _as_dt(r["created_at"]), reverse=True)

    def get_raffle(self, raffle_id: str) -> Optional[dict]:
        self._check("get_raffle")
        row = self.raffles.get(raffle_id)
        return dict(row) if row else None

    def list_expired_active(self, now: datetime) -> List[str]:
        self._check("list_expired_active")
        return [rid for rid, r in self.raffles.items() if r["status"] == "active" and _as_dt(r["ends_at"]) < now]

    def insert_raffle(self, row: dict) -> dict:
        self._check("insert_raffle")
        self._next_id += 1
        stored = dict(row, id=str(self._next_id), ticket_sold=0, created_at=NOW.isoformat(), winner_address=None)
        self.raffles[stored["id"]] = stored
        return dict(stored)

    def update_raffle(self, raffle_id: str, fields: dict) -> None:
        self._check("update_raffle")
        self.raffles[raffle_id].update(fields)

    def insert_entry(self, raffle_id: str, wallet: str, quantity: int) -> None:
        self._check("insert_entry")
        self.entries.append(
            {
                "raffle_id": raffle_id,
                "wallet_address": wallet,
                "quantity": quantity,
                "created_at": (NOW + timedelta(seconds=len(self.entries))).isoformat(),
            }
        )

    def list_entries(self, raffle_id: str) -> List[dict]:
        self._check("list_entries")
        return [dict(e) for e in self.entries if e["raffle_id"] == raffle_id]

    def wallet_ticket_count(self, raffle_id: str, wallet: str) -> int:
        self._check("wallet_ticket_count")
        return sum(e["quantity"] for e in self.entries if e["raffle_id"] == raffle_id and e["wallet_address"] == wallet)

    def recent_entries(self, limit: int = 10) -> List[dict]:
        self._check("recent_entries")
        newest = sorted(self.entries, key=lambda e: e["created_at"], reverse=True)[:limit]
        return [dict(e, raffles={"name": self.raffles[e["raffle_id"]]["name"]}) for e in newest]

    def entry_totals(self) -> Dict[str, int]:
        self._check("entry_totals")
        totals: Dict[str, int] = {}
        for e in self.entries:
            totals[e["raffle_id"]] = totals.get(e["raffle_id"], 0) + e["quantity"]
        return totals

    def pick_raffle_winner(self, raffle_id: str) -> Optional[str]:
        self._check("pick_raffle_winner")
        self.draw_calls.append(raffle_id)
        row = self.raffles[raffle_id]
        if row.get("winner_address"):
            return row["winner_address"]
        entries = [e for e in self.entries if e["raffle_id"] == raffle_id]
        if not entries:
            return None
        row["winner_address"] = entries[0]["wallet_address"]
        row["status"] = "ended"
        return row["winner_address"]

    def increment_ticket_sold(self, raffle_id: str, delta: int) -> None:
        self._check("increment_ticket_sold")
        self.raffles[raffle_id]["ticket_sold"] += delta


def mint_account(decimals: int = 6, owner: Pubkey = TOKEN_PROGRAM_ID) -> SimpleNamespace:
    data = bytes(44) + bytes([decimals]) + bytes(37)
    return SimpleNamespace(owner=owner, data=data)


def parsed_transaction(payer: str, legs, mint: Optional[str] = None, decimals: int = 9) -> dict:
    """jsonParsed transaction body with one transfer per (destination, amount) leg."""
    instructions = []
    for destination, amount in legs:
        if mint is None:
            info = {"source": payer, "destination": destination, "lamports": amount}
            instructions.append({"program": "system", "parsed": {"type": "transfer", "info": info}})
        else:
            info = {
                "source": "BuyerTokenAccount",
                "mint": mint,
                "destination": destination,
                "authority": payer,
                "tokenAmount": {"amount": str(amount), "decimals": decimals},
            }
            instructions.append({"program": "spl-token", "parsed": {"type": "transferChecked", "info": info}})
    return {
        "meta": {"err": None},
        "transaction": {
            "message": {
                "accountKeys": [{"pubkey": payer, "signer": True, "writable": True}],
                "instructions": instructions,
            }
        },
    }


class FakeSolClient:
    """Answers get_account_info, get_latest_blockhash, get_signature_statuses and get_transaction from dicts."""

    def __init__(self) -> None:
        self.accounts: Dict[Pubkey, SimpleNamespace] = {}
        self.failing: set = set()
        self.statuses: Dict[str, SimpleNamespace] = {}
        self.transactions: Dict[str, dict] = {}

    def add_mint(self, mint: str, decimals: int = 6, program: Pubkey = TOKEN_PROGRAM_ID) -> None:
        self.accounts[Pubkey.from_string(mint)] = mint_account(decimals, program)

    def add_ata(self, owner: str, mint: str, program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
        ata = derive_ata(Pubkey.from_string(owner), Pubkey.from_string(mint), program)
        self.accounts[ata] = SimpleNamespace(owner=program, data=bytes(165))
        return ata

    def get_account_info(self, pubkey):
        if pubkey in self.failing:
            raise ConnectionError("rpc unavailable")
        return SimpleNamespace(value=self.accounts.get(pubkey))

    def get_latest_blockhash(self):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    def get_signature_statuses(self, signatures):
        status = self.statuses.get(str(signatures[0]), SimpleNamespace(err=None, confirmation_status="processed"))
        return SimpleNamespace(value=[status])

    def pay_for(self, signature: str, plan, payer: Optional[str] = None, legs=None) -> None:
        """Serve a transaction paying `legs` (default: the plan's own legs) from `payer`."""
        self.transactions[signature] = parsed_transaction(
            payer or str(plan.payer),
            plan.legs if legs is None else legs,
            plan.pending.mint,
            plan.pending.decimals,
        )

    def get_transaction(self, signature, encoding=None, commitment=None, max_supported_transaction_version=None):
        tx = self.transactions.get(str(signature))
        return SimpleNamespace(value=tx, to_json=lambda: json.dumps({"jsonrpc": "2.0", "result": tx, "id": 0}))


class FakeResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeHttp:
    """Stands in for the `requests` module; `handler(url, json)` returns a payload or raises."""

    def __init__(self, handler: Callable) -> None:
        self.handler = handler
        self.calls: List[dict] = []

    def post(self, url, json=None, timeout=None, **kwargs):
        self.calls.append({"method": "POST", "url": url, "json": json})
        return FakeResponse(self.handler(url, json))

    def get(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": "GET", "url": url, "headers": headers})
        return FakeResponse(self.handler(url, None))


class FakeSink:
    def __init__(self) -> None:
        self.created: List[str] = []
        self.ended: List[tuple] = []

    def raffle_created(self, raffle) -> None:
        self.created.append(raffle.id)

    def raffle_ended(self, raffle, participant_count: int) -> None:
        self.ended.append((raffle.id, raffle.winner, participant_count))


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'raffles-test.db'}")
    init_db(eng)
    return eng


@pytest.fixture
def store():
    return InMemoryStore([raffle_row("r1")])


@pytest.fixture
def sol_client():
    return FakeSolClient()


@pytest.fixture
def sink():
    return FakeSink()
