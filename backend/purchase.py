"""
Ticket purchase orchestration.

Steps run strictly in order and each one gates the next:
eligibility -> build -> sign & send -> confirm (processed) -> settlement.
Nothing remote is written before confirmation; a cancelled signing prompt
leaves no trace.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Optional

from chain import ChainClient
from eligibility import check_eligibility
from errors import ChainError, EligibilityError, RaffleError, Result, StoreError, ValidationError, WalletError
from models import Raffle, parse_raffle
from settlement import SettlementRecorder
from tx_builder import PurchaseBuilder, PurchasePlan, instruction_to_dict, message_from_instructions

logger = logging.getLogger("raffles.purchase")

CONFIRM_LEVEL = "processed"


def _account_key(key) -> Optional[str]:
    if isinstance(key, dict):
        return key.get("pubkey")
    return key


def paid_transfers(tx: dict, payer: str, mint: Optional[str]) -> Dict[str, int]:
    """Amount moved from `payer` per destination in a jsonParsed transaction."""
    message = (tx.get("transaction") or {}).get("message") or {}
    paid: Dict[str, int] = Counter()
    for ix in message.get("instructions") or []:
        parsed = ix.get("parsed") if isinstance(ix, dict) else None
        if not isinstance(parsed, dict):
            continue
        info = parsed.get("info") or {}
        kind = parsed.get("type")
        if mint is None and kind == "transfer" and info.get("source") == payer and "lamports" in info:
            paid[info.get("destination")] += int(info["lamports"])
        elif mint is not None and kind == "transferChecked" and info.get("mint") == mint:
            if payer in (info.get("authority"), info.get("multisigAuthority")):
                paid[info.get("destination")] += int((info.get("tokenAmount") or {}).get("amount") or 0)
    return paid


def payment_mismatch(tx: dict, plan: PurchasePlan) -> Optional[str]:
    """None when `tx` pays every leg of `plan` from the plan's payer, else the first discrepancy."""
    if (tx.get("meta") or {}).get("err") is not None:
        return "transaction failed on chain"
    message = (tx.get("transaction") or {}).get("message") or {}
    keys = message.get("accountKeys") or []
    payer = str(plan.payer)
    if not keys or _account_key(keys[0]) != payer:
        return "fee payer is not the buyer"
    paid = paid_transfers(tx, payer, plan.pending.mint)
    expected: Dict[str, int] = Counter()
    for destination, amount in plan.legs:
        expected[destination] += amount
    for destination, amount in expected.items():
        if paid.get(destination, 0) < amount:
            return f"paid {paid.get(destination, 0)} of {amount} to {destination}"
    return None


class PurchaseService:
    def __init__(
        self,
        store,
        builder: PurchaseBuilder,
        chain: ChainClient,
        recorder: SettlementRecorder,
        confirm_timeout: int = 30,
    ) -> None:
        self.store = store
        self.builder = builder
        self.chain = chain
        self.recorder = recorder
        self.confirm_timeout = confirm_timeout

    def _load_raffle(self, raffle_id: str) -> Raffle:
        row = self.store.get_raffle(raffle_id)
        if row is None:
            raise ValidationError("Raffle not found.", raffle_id=raffle_id)
        return parse_raffle(row)

    def _plan(self, raffle_id: str, quantity: int, buyer: str):
        raffle = self._load_raffle(raffle_id)
        prior = self.store.wallet_ticket_count(raffle_id, buyer)
        check_eligibility(raffle, quantity, prior).unwrap()
        return self.builder.build_purchase(raffle, quantity, buyer).unwrap()

    def prepare(self, raffle_id: str, quantity: int, buyer: str) -> Result:
        """Eligibility and transaction build; the caller signs the returned message."""
        try:
            plan = self._plan(raffle_id, quantity, buyer)
            blockhash = self.chain.latest_blockhash()
        except RaffleError as exc:
            logger.info("purchase_rejected raffle=%s buyer=%s kind=%s error=%s", raffle_id, buyer, exc.kind, exc.message)
            return Result.failure(exc)
        payload = plan.summary()
        payload.update(
            {
                "payer": str(plan.payer),
                "blockhash": blockhash,
                "message": message_from_instructions(plan.instructions, plan.payer, blockhash),
                "instructions": [instruction_to_dict(ix) for ix in plan.instructions],
            }
        )
        return Result.success(payload)

    def settle(self, raffle_id: str, quantity: int, buyer: str, signature: str) -> Result:
        """Record a client-sent purchase once it is confirmed and pays for this order.

        The plan is re-derived from the raffle as it stands now, so the
        eligibility check and the expected transfer legs never come from the
        client. A signature that was already recorded returns its logged outcome.
        """
        if not signature:
            return Result.failure(ValidationError("Missing transaction signature."))
        replay = self.recorder.lookup(signature)
        if replay is not None:
            return replay

        try:
            plan = self._plan(raffle_id, quantity, buyer)
        except EligibilityError as exc:
            logger.warning(
                "settle_ineligible raffle=%s buyer=%s quantity=%s sig=%s reason=%s",
                raffle_id,
                buyer,
                quantity,
                signature,
                exc.reason,
            )
            return Result.failure(exc)
        except RaffleError as exc:
            return Result.failure(exc)

        try:
            confirmed = self.chain.wait_for_confirmation(signature, CONFIRM_LEVEL, self.confirm_timeout)
            if not confirmed:
                logger.warning("purchase_unconfirmed raffle=%s buyer=%s sig=%s", raffle_id, buyer, signature)
                return Result.failure(ChainError("Transaction was not confirmed.", signature=signature))
            tx = self.chain.fetch_transaction(signature, self.confirm_timeout)
        except ChainError as exc:
            return Result.failure(exc)
        if tx is None:
            return Result.failure(ChainError("Transaction details are not available yet.", signature=signature))

        mismatch = payment_mismatch(tx, plan)
        if mismatch:
            logger.warning(
                "settle_payment_mismatch raffle=%s buyer=%s quantity=%s sig=%s reason=%s",
                raffle_id,
                buyer,
                quantity,
                signature,
                mismatch,
            )
            return Result.failure(
                ValidationError("Transaction does not pay for this purchase.", reason=mismatch, signature=signature)
            )
        return self.recorder.record(raffle_id, buyer, quantity, signature)

    def purchase(self, raffle_id: str, quantity: int, buyer: str, signer) -> Result:
        """Full flow with a server-side signer exposing send_transaction and confirm."""
        try:
            plan = self._plan(raffle_id, quantity, buyer)
        except RaffleError as exc:
            return Result.failure(exc)

        try:
            signature = signer.send_transaction(plan)
        except Exception as exc:  # noqa: BLE001
            logger.info("purchase_not_sent raffle=%s buyer=%s error=%s", raffle_id, buyer, exc)
            return Result.failure(WalletError(f"Transaction was not sent: {exc}"))
        if not signature:
            return Result.failure(WalletError("Transaction was cancelled."))

        try:
            confirmed = signer.confirm(str(signature), CONFIRM_LEVEL)
        except Exception as exc:  # noqa: BLE001
            return Result.failure(ChainError(f"Confirmation failed: {exc}", signature=str(signature)))
        if not confirmed:
            return Result.failure(ChainError("Transaction was not confirmed.", signature=str(signature)))

        result = self.recorder.record(raffle_id, buyer, quantity, str(signature))
        logger.info(
            "purchase_complete raffle=%s buyer=%s quantity=%s sig=%s needs_reconcile=%s",
            raffle_id,
            buyer,
            quantity,
            signature,
            result.value.get("needs_reconcile") if result.ok else None,
        )
        return result


def prior_ticket_count(store, raffle_id: str, wallet: Optional[str]) -> int:
    if not wallet:
        return 0
    try:
        return store.wallet_ticket_count(raffle_id, wallet)
    except StoreError as exc:
        logger.warning("ticket_count_failed raffle=%s wallet=%s error=%s", raffle_id, wallet, exc)
        return 0
