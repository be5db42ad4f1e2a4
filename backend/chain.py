from __future__ import annotations

import json
import logging
import time
from typing import Optional

from solana.rpc.commitment import Confirmed
from solders.signature import Signature

from errors import ChainError

logger = logging.getLogger("raffles.chain")

# Commitment levels from weakest to strongest; anything at or above "processed" counts as settled.
COMMITMENT_ORDER = ["processed", "confirmed", "finalized"]


def _status_label(status) -> Optional[str]:
    label = getattr(status, "confirmation_status", None)
    if label is None:
        return None
    # solders exposes TransactionConfirmationStatus.Processed etc.
    return str(label).split(".")[-1].lower()


def reaches_commitment(label: Optional[str], level: str) -> bool:
    if not label or label not in COMMITMENT_ORDER:
        return False
    return COMMITMENT_ORDER.index(label) >= COMMITMENT_ORDER.index(level)


class ChainClient:
    """Thin wrapper over the Solana RPC client for blockhashes and confirmations."""

    def __init__(self, sol_client, poll_interval: float = 0.8) -> None:
        self.sol_client = sol_client
        self.poll_interval = poll_interval

    def latest_blockhash(self) -> str:
        try:
            resp = self.sol_client.get_latest_blockhash()
            return str(resp.value.blockhash)
        except Exception as exc:  # noqa: BLE001
            raise ChainError(f"Failed to fetch blockhash: {exc}") from exc

    @staticmethod
    def _signature(signature: str) -> Signature:
        try:
            return Signature.from_string(signature)
        except Exception as exc:  # noqa: BLE001
            raise ChainError(f"Invalid transaction signature: {exc}") from exc

    def wait_for_confirmation(self, signature: str, level: str = "processed", timeout_sec: int = 30) -> bool:
        sig_obj = self._signature(signature)
        start = time.time()
        while time.time() - start < timeout_sec:
            try:
                resp = self.sol_client.get_signature_statuses([sig_obj])
            except Exception as exc:  # noqa: BLE001
                logger.warning("signature_status_failed sig=%s error=%s", signature, exc)
                resp = None
            if resp is not None and resp.value and resp.value[0]:
                status = resp.value[0]
                if status.err is not None:
                    logger.info("transaction_failed sig=%s err=%s", signature, status.err)
                    return False
                if reaches_commitment(_status_label(status), level):
                    return True
            time.sleep(self.poll_interval)
        logger.info("confirmation_timeout sig=%s level=%s timeout=%s", signature, level, timeout_sec)
        return False

    def fetch_transaction(self, signature: str, timeout_sec: int = 30) -> Optional[dict]:
        """jsonParsed transaction body, polled until the node serves it at "confirmed"."""
        sig_obj = self._signature(signature)
        start = time.time()
        while True:
            try:
                resp = self.sol_client.get_transaction(
                    sig_obj,
                    encoding="jsonParsed",
                    commitment=Confirmed,
                    max_supported_transaction_version=0,
                )
                payload = json.loads(resp.to_json())
            except Exception as exc:  # noqa: BLE001
                logger.warning("transaction_fetch_failed sig=%s error=%s", signature, exc)
                payload = {}
            # solders responses serialize as the full JSON-RPC envelope
            tx = payload.get("result") if "result" in payload else payload
            if tx:
                return tx
            if time.time() - start >= timeout_sec:
                break
            time.sleep(self.poll_interval)
        logger.info("transaction_not_found sig=%s timeout=%s", signature, timeout_sec)
        return None
