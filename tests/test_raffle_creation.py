"""Raffle creation validation, fee transaction and row insert; floor price lookup."""

from datetime import timedelta
from types import SimpleNamespace

import pytest

from chain import ChainClient
from config import Settings
from conftest import CREATOR, MINT, NOW, TREASURY, FakeHttp, FakeSink, sig
from errors import ChainError, ValidationError
from floor_price import FloorPriceClient, FloorPriceError, update_raffle_floor
from models import utcnow
from raffle_creation import CreateRaffleRequest, CreationService, validate_creation


def make_settings(**overrides):
    values = {"treasury_wallet": TREASURY, "authorized_creators": None, "confirm_timeout_seconds": 1}
    values.update(overrides)
    return Settings(**values)


def make_request(**overrides):
    values = {
        "creator": CREATOR,
        "ticket_price": "0.5",
        "ticket_supply": 10,
        "limit_per_wallet": 2,
        "ends_at": utcnow() + timedelta(days=2),
        "prize_nft": {"mint": MINT, "name": "Cat #7", "image": "https://img/cat.png"},
        "agree_to_terms": True,
    }
    values.update(overrides)
    return CreateRaffleRequest(**values)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"ticket_supply": 2}, "Minimum ticket supply is 3."),
        ({"ticket_price": "0"}, "Please enter a valid ticket price."),
        ({"prize_nft": None}, "Please select at least one prize (NFT or Tokens)."),
        ({"prize_token": {"mint": MINT, "symbol": "BONK", "amount": 0}}, "Please enter a valid token amount."),
        ({"ends_at": None}, "Please select an end date."),
        ({"agree_to_terms": False}, "You must agree to the Terms & Conditions to create a raffle."),
    ],
)
def test_validation_messages(overrides, message):
    result = validate_creation(make_request(**overrides), make_settings())
    assert isinstance(result.error, ValidationError)
    assert result.error.message == message


def test_past_end_date_and_unlisted_creator_are_rejected():
    past = make_request(ends_at=NOW - timedelta(days=1))
    assert not validate_creation(past, make_settings()).ok
    gated = make_settings(authorized_creators="SomeoneElse111")
    assert "not authorized" in validate_creation(make_request(), gated).error.message


def test_prepare_creation_fee(store, sol_client):
    service = CreationService(store, ChainClient(sol_client, poll_interval=0), make_settings())
    plain = service.prepare_creation(make_request()).unwrap()
    holders = service.prepare_creation(make_request(holder_collections=["Mad Lads"])).unwrap()
    assert plain["fee_lamports"] == 50_000_000
    assert holders["fee_lamports"] == 1_050_000_000
    assert holders["fee_sol"] == pytest.approx(1.05)
    assert holders["message"]


def test_finalize_inserts_row_and_announces(store, sol_client):
    sink = FakeSink()
    service = CreationService(store, ChainClient(sol_client, poll_interval=0), make_settings(), sink=sink)
    raffle = service.finalize_creation(make_request(payment_currency="NTZ"), sig(4)).unwrap()

    row = store.raffles[raffle.id]
    assert row["name"] == "Cat #7"
    assert row["status"] == "active"
    assert row["payment_symbol"] == "NTZ"
    assert row["payment_mint"] == make_settings().payment_token_mint
    assert row["prize_nft_mint"] == MINT
    assert sink.created == [raffle.id]


def test_finalize_requires_confirmed_fee(store, sol_client):
    sol_client.statuses[sig(5)] = SimpleNamespace(err="Failed", confirmation_status="processed")
    service = CreationService(store, ChainClient(sol_client, poll_interval=0), make_settings())
    before = len(store.raffles)
    result = service.finalize_creation(make_request(), sig(5))
    assert isinstance(result.error, ChainError)
    assert len(store.raffles) == before


def magic_eden(url, body):
    if url.endswith(f"tokens/{MINT}"):
        return {"collection": "cats"}
    if url.endswith("collections/cats/stats"):
        return {"floorPrice": 12_500_000_000}
    return {}


def test_floor_price_written_to_raffle(store):
    client = FloorPriceClient("https://me/v2", api_key="k", http=FakeHttp(magic_eden))
    result = update_raffle_floor(store, client, "r1", MINT)
    assert result.ok
    assert store.raffles["r1"]["floor_price"] == 12.5
    assert client.http.calls[0]["headers"]["Authorization"] == "Bearer k"


def test_floor_price_missing_collection(store):
    client = FloorPriceClient("https://me/v2", http=FakeHttp(lambda url, body: {}))
    result = update_raffle_floor(store, client, "r1", MINT)
    assert isinstance(result.error, FloorPriceError)
    assert "floor_price" not in store.raffles["r1"]
    assert isinstance(update_raffle_floor(store, client, "", MINT).error, ValidationError)
