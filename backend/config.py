from __future__ import annotations

from typing import List, Optional

from pydantic_settings import BaseSettings

LAMPORTS_PER_SOL = 1_000_000_000
NATIVE_SYMBOL = "SOL"
NATIVE_DECIMALS = 9


class Settings(BaseSettings):
    solana_rpc: str = "https://api.mainnet-beta.solana.com"
    helius_rpc_url: str = ""
    supabase_url: str = ""
    supabase_service_key: str = ""
    treasury_wallet: str = "2Vvv3raBsA2SKSU4GbURS9nDVWe46zZAqUt3rj4Hb8n2"
    payment_token_mint: Optional[str] = "HgceAr5JaC4CbBMNqQJC4BMj7TS3d6uaQ3QDGYzvieA3"
    payment_token_symbol: str = "NTZ"
    payment_token_decimals: int = 6  # also the fallback precision when a mint lookup fails
    commission_bps: int = 475  # 4.75% of every ticket goes to the treasury
    creation_fee_sol: float = 0.05
    holder_only_fee_sol: float = 1.0
    authorized_creators: Optional[str] = None  # comma-separated; empty means anyone may create
    blocked_prize_keywords: str = "lucky emmy,airdrop,reward"
    discord_webhook_url: Optional[str] = None
    site_url: str = "https://raffles.microsnft.xyz"
    magic_eden_api_key: Optional[str] = None
    magic_eden_base: str = "https://api-mainnet.magiceden.io/v2"
    cron_secret: Optional[str] = None
    database_url: str = "sqlite:///./raffles.db"
    draw_scheduler_enabled: bool = True
    draw_interval_seconds: int = 60
    reconcile_interval_seconds: int = 300
    seen_outcomes_per_wallet: int = 200
    indexer_page_limit: int = 100
    indexer_max_pages: int = 10
    confirm_timeout_seconds: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided; it also serves the DAS indexer.
        return self.helius_rpc_url or self.solana_rpc

    def creator_allowlist(self) -> List[str]:
        return _split_csv(self.authorized_creators)

    def prize_keyword_blocklist(self) -> List[str]:
        return [k.lower() for k in _split_csv(self.blocked_prize_keywords)]


def _split_csv(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


settings = Settings()
