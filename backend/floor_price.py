"""Collection floor price lookup (Magic Eden) written onto a raffle row."""

from __future__ import annotations

import logging
import threading
from typing import Optional

import requests

from config import LAMPORTS_PER_SOL
from errors import RaffleError, Result, StoreError, ValidationError

logger = logging.getLogger("raffles.floor")


class FloorPriceError(RaffleError):
    kind = "floor_price"


class FloorPriceClient:
    def __init__(self, base_url: str, api_key: Optional[str] = None, http=None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = http or requests
        self.timeout = timeout

    def _get(self, path: str) -> dict:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = f"{self.base_url}/{path}"
        try:
            resp = self.http.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise FloorPriceError(f"Magic Eden request failed: {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise FloorPriceError(f"Unexpected Magic Eden payload for {path}")
        return data

    def collection_symbol(self, mint: str) -> str:
        symbol = self._get(f"tokens/{mint}").get("collection")
        if not symbol:
            raise FloorPriceError(f"No collection symbol found for mint {mint}", mint=mint)
        return symbol

    def fetch_floor_price(self, mint: str) -> dict:
        symbol = self.collection_symbol(mint)
        stats = self._get(f"collections/{symbol}/stats")
        lamports = stats.get("floorPrice")
        if lamports is None:
            raise FloorPriceError(f"No floor price listed for {symbol}", collection=symbol)
        floor = float(lamports) / LAMPORTS_PER_SOL
        logger.info("floor_price mint=%s collection=%s floor=%s", mint, symbol, floor)
        return {"floor_price": floor, "collection": symbol}


def update_raffle_floor(store, client: FloorPriceClient, raffle_id: str, mint: str) -> Result:
    if not raffle_id or not mint:
        return Result.failure(ValidationError("Missing raffleId or mintAddress"))
    try:
        found = client.fetch_floor_price(mint)
        store.update_raffle(raffle_id, {"floor_price": found["floor_price"]})
    except (FloorPriceError, StoreError) as exc:
        logger.warning("floor_update_failed raffle=%s mint=%s error=%s", raffle_id, mint, exc.message)
        return Result.failure(exc)
    return Result.success({"raffle_id": raffle_id, **found})


def queue_floor_update(store, client: FloorPriceClient, raffle_id: str, mint: str) -> threading.Thread:
    """Background lookup; the floor attribute is optional and may land later."""
    worker = threading.Thread(
        target=update_raffle_floor,
        args=(store, client, raffle_id, mint),
        daemon=True,
        name=f"floor-{raffle_id}",
    )
    worker.start()
    return worker
