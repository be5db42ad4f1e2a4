"""
Remote relational store for raffles and entries (Supabase / PostgREST).

Tables: `raffles`, `entries`.
Procedures: `pick_raffle_winner(target_raffle_id)` and
`increment_ticket_sold(target_raffle_id, delta)`; both run server-side and are
the only way the shared `ticket_sold` / `winner_address` fields change.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from errors import StoreError

logger = logging.getLogger("raffles.store")


class SupabaseStore:
    def __init__(self, base_url: str, service_key: str, timeout: float = 15.0, session: Optional[requests.Session] = None) -> None:
        if not base_url:
            raise StoreError("SUPABASE_URL not configured")
        self.rest_url = base_url.rstrip("/") + "/rest/v1"
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update(
            {
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.rest_url}/{path}"
        try:
            resp = self.http.request(method, url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            body = getattr(getattr(exc, "response", None), "text", "")
            raise StoreError(f"{method} {path} failed: {exc} {body}".strip()) from exc
        if not resp.content:
            return None
        return resp.json()

    # -- raffles --------------------------------------------------------------

    def list_raffles(self) -> List[dict]:
        return self._request("GET", "raffles", params={"select": "*", "order": "created_at.desc"}) or []

    def get_raffle(self, raffle_id: str) -> Optional[dict]:
        rows = self._request("GET", "raffles", params={"select": "*", "id": f"eq.{raffle_id}"}) or []
        return rows[0] if rows else None

    def list_expired_active(self, now: datetime) -> List[str]:
        rows = self._request(
            "GET",
            "raffles",
            params={"select": "id", "status": "eq.active", "ends_at": f"lt.{now.isoformat()}"},
        ) or []
        return [str(r["id"]) for r in rows]

    def insert_raffle(self, row: Dict[str, Any]) -> dict:
        rows = self._request("POST", "raffles", json=[row], headers={"Prefer": "return=representation"}) or []
        if not rows:
            raise StoreError("Raffle insert returned no row")
        return rows[0]

    def update_raffle(self, raffle_id: str, fields: Dict[str, Any]) -> None:
        self._request("PATCH", "raffles", params={"id": f"eq.{raffle_id}"}, json=fields)

    # -- entries --------------------------------------------------------------

    def insert_entry(self, raffle_id: str, wallet: str, quantity: int) -> None:
        self._request(
            "POST",
            "entries",
            json=[{"raffle_id": raffle_id, "wallet_address": wallet, "quantity": quantity}],
        )

    def list_entries(self, raffle_id: str) -> List[dict]:
        return self._request(
            "GET",
            "entries",
            params={"select": "wallet_address,quantity,created_at", "raffle_id": f"eq.{raffle_id}"},
        ) or []

    def wallet_ticket_count(self, raffle_id: str, wallet: str) -> int:
        rows = self._request(
            "GET",
            "entries",
            params={"select": "quantity", "raffle_id": f"eq.{raffle_id}", "wallet_address": f"eq.{wallet}"},
        ) or []
        return sum(int(r.get("quantity") or 0) for r in rows)

    def recent_entries(self, limit: int = 10) -> List[dict]:
        return self._request(
            "GET",
            "entries",
            params={
                "select": "raffle_id,wallet_address,quantity,created_at,raffles(name)",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        ) or []

    def entry_totals(self) -> Dict[str, int]:
        rows = self._request("GET", "entries", params={"select": "raffle_id,quantity"}) or []
        totals: Dict[str, int] = defaultdict(int)
        for r in rows:
            totals[str(r["raffle_id"])] += int(r.get("quantity") or 0)
        return dict(totals)

    # -- procedures -----------------------------------------------------------

    def pick_raffle_winner(self, raffle_id: str) -> Optional[str]:
        winner = self._request("POST", "rpc/pick_raffle_winner", json={"target_raffle_id": raffle_id})
        return str(winner) if winner else None

    def increment_ticket_sold(self, raffle_id: str, delta: int) -> None:
        self._request("POST", "rpc/increment_ticket_sold", json={"target_raffle_id": raffle_id, "delta": delta})
