"""End-to-end purchase flow with a fake wallet signer."""

from types import SimpleNamespace

import pytest

from chain import ChainClient
from conftest import BUYER, CREATOR, MINT, TREASURY, raffle_row, sig
from errors import ChainError, EligibilityError, ValidationError, WalletError
from models import Raffle
from purchase import PurchaseService
from settlement import SettlementRecorder
from tx_builder import PurchaseBuilder


class FakeSigner:
    def __init__(self, signature=None, send_error=None, confirmed=True):
        self.signature = signature or sig(7)
        self.send_error = send_error
        self.confirmed = confirmed
        self.sent = []

    def send_transaction(self, plan):
        if self.send_error:
            raise self.send_error
        self.sent.append(plan)
        return self.signature

    def confirm(self, signature, level):
        assert level == "processed"
        return self.confirmed


@pytest.fixture
def service(store, engine, sol_client):
    chain = ChainClient(sol_client, poll_interval=0)
    builder = PurchaseBuilder(sol_client, TREASURY)
    return PurchaseService(store, builder, chain, SettlementRecorder(store, engine), confirm_timeout=1)


def test_purchase_records_after_confirmation(service, store):
    signer = FakeSigner()
    result = service.purchase("r1", 2, BUYER, signer)
    assert result.ok
    assert len(signer.sent[0].instructions) == 2
    assert store.raffles["r1"]["ticket_sold"] == 2
    assert store.wallet_ticket_count("r1", BUYER) == 2


def test_cancelled_signing_leaves_no_trace(service, store):
    result = service.purchase("r1", 1, BUYER, FakeSigner(send_error=RuntimeError("User rejected the request")))
    assert isinstance(result.error, WalletError)
    assert store.raffles["r1"]["ticket_sold"] == 0
    assert store.entries == []


def test_unconfirmed_transaction_is_chain_error(service, store):
    result = service.purchase("r1", 1, BUYER, FakeSigner(confirmed=False))
    assert isinstance(result.error, ChainError)
    assert store.entries == []


def test_ineligible_purchase_never_reaches_signer(service, store):
    store.insert_entry("r1", BUYER, 5)
    signer = FakeSigner()
    result = service.purchase("r1", 1, BUYER, signer)
    assert isinstance(result.error, EligibilityError)
    assert signer.sent == []


def test_prepare_returns_message_and_amounts(service):
    payload = service.prepare("r1", 3, BUYER).unwrap()
    assert payload["commission_total"] == 142_500_000
    assert payload["creator_total"] == 2_857_500_000
    assert payload["payer"] == BUYER
    assert payload["message"]
    assert len(payload["instructions"]) == 2


def test_settle_waits_for_processed_status(service, store, sol_client):
    paid(service, sol_client, sig(8), 1)
    assert service.settle("r1", 1, BUYER, sig(8)).ok
    assert store.raffles["r1"]["ticket_sold"] == 1

    sol_client.statuses[sig(9)] = SimpleNamespace(err="InstructionError", confirmation_status="processed")
    failed = service.settle("r1", 1, BUYER, sig(9))
    assert isinstance(failed.error, ChainError)
    assert store.raffles["r1"]["ticket_sold"] == 1


def paid(service, sol_client, signature, quantity, raffle_id="r1", **kwargs):
    raffle = Raffle.from_row(service.store.get_raffle(raffle_id))
    plan = service.builder.build_purchase(raffle, quantity, BUYER).unwrap()
    sol_client.pay_for(signature, plan, **kwargs)
    return plan


def test_settle_rechecks_eligibility_for_confirmed_quantity(service, store, sol_client):
    store.raffles["r1"]["limit_per_wallet"] = 1
    paid(service, sol_client, sig(11), 1)

    over_limit = service.settle("r1", 2, BUYER, sig(11))
    assert over_limit.error.reason == EligibilityError.WALLET_LIMIT_EXCEEDED
    over_supply = service.settle("r1", 50, BUYER, sig(11))
    assert over_supply.error.reason == EligibilityError.SUPPLY_EXCEEDED
    assert store.raffles["r1"]["ticket_sold"] == 0
    assert store.entries == []

    assert service.settle("r1", 1, BUYER, sig(11)).ok
    assert store.raffles["r1"]["ticket_sold"] == 1


def test_settle_rejects_transaction_paying_for_fewer_tickets(service, store, sol_client):
    paid(service, sol_client, sig(12), 1)
    result = service.settle("r1", 3, BUYER, sig(12))
    assert isinstance(result.error, ValidationError)
    assert result.error.details["reason"].startswith("paid 47500000 of 142500000")
    assert store.raffles["r1"]["ticket_sold"] == 0


def test_settle_rejects_short_split_and_foreign_payer(service, store, sol_client):
    plan = paid(service, sol_client, sig(13), 1)
    treasury_leg, creator_leg = plan.legs
    sol_client.pay_for(sig(13), plan, legs=[(TREASURY, treasury_leg[1] - 1), creator_leg])
    short = service.settle("r1", 1, BUYER, sig(13))
    assert isinstance(short.error, ValidationError)

    sol_client.pay_for(sig(14), plan, payer=CREATOR)
    foreign = service.settle("r1", 1, BUYER, sig(14))
    assert foreign.error.details["reason"] == "fee payer is not the buyer"
    assert store.entries == []


def test_settle_replay_returns_logged_outcome(service, store, sol_client):
    store.raffles["r1"]["limit_per_wallet"] = 1
    paid(service, sol_client, sig(15), 1)
    first = service.settle("r1", 1, BUYER, sig(15))
    again = service.settle("r1", 1, BUYER, sig(15))
    assert first.ok and again.ok
    assert again.value["status"] == "recorded"
    assert store.raffles["r1"]["ticket_sold"] == 1
    assert len(store.entries) == 1


def test_settle_token_purchase_checks_token_accounts(service, store, sol_client):
    store.raffles["t1"] = raffle_row("t1", payment_symbol="NTZ", payment_mint=MINT, ticket_price=2)
    sol_client.add_mint(MINT, decimals=6)
    sol_client.add_ata(BUYER, MINT)
    plan = paid(service, sol_client, sig(16), 2, raffle_id="t1")
    assert plan.legs[1][1] == 2 * 1_905_000
    assert service.settle("t1", 2, BUYER, sig(16)).ok
    assert store.wallet_ticket_count("t1", BUYER) == 2
