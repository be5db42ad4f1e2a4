"""
Prize-eligibility classification of a wallet's holdings.

- `classify` is pure: indexer items in, {collectibles, tokens} out.
- Wallet loading tries an ordered list of strategies (DAS indexer first, raw
  token-account enumeration second); each returns a Result and the first
  success wins.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

import requests

from errors import IndexerError, Result
from models import AssetCatalog, AssetKind, ClassifiedAsset, IndexedAsset
from tx_builder import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

logger = logging.getLogger("raffles.assets")

UNCATEGORIZED = "Uncategorized"
DEFAULT_IMAGE = "./assets/micros.png"

NFT_INTERFACES = {
    "V1_NFT",
    "V2_NFT",
    "LEGACY_NFT",
    "ProgrammableNFT",
    "V1_PRINT",
    "MplCoreAsset",
    "MplCoreCollection",
    "FungibleAsset",  # only with zero decimals, see _is_collectible_interface
}
FUNGIBLE_INTERFACES = {"FungibleToken", "FungibleAsset"}
NON_FUNGIBLE_MARKER = "nonfungible"


def _first(*values):
    for v in values:
        if v:
            return v
    return None


def parse_das_item(item: dict) -> IndexedAsset:
    if not isinstance(item, dict) or not item.get("id"):
        raise IndexerError("Indexer item missing id")
    content = item.get("content") or {}
    metadata = content.get("metadata") or {}
    links = content.get("links") or {}
    files = content.get("files") or []
    token_info = item.get("token_info") or {}
    ownership = item.get("ownership") or {}

    collection_group = next(
        (g for g in item.get("grouping") or [] if isinstance(g, dict) and g.get("group_key") == "collection"),
        None,
    )
    explicit_collection = (metadata.get("collection") or {}) if isinstance(metadata.get("collection"), dict) else {}
    group_meta = (collection_group or {}).get("collection_metadata") or {}

    first_file = files[0] if files and isinstance(files[0], dict) else {}
    decimals = token_info.get("decimals")
    return IndexedAsset(
        id=str(item["id"]),
        interface=str(item.get("interface") or ""),
        decimals=int(decimals) if decimals is not None else None,
        balance=int(token_info.get("balance") or 0),
        name=str(metadata.get("name") or token_info.get("name") or ""),
        symbol=str(metadata.get("symbol") or token_info.get("symbol") or ""),
        image=_first(links.get("image"), first_file.get("uri"), first_file.get("url")),
        token_standard=str(metadata.get("token_standard") or ""),
        collection_name=_first(explicit_collection.get("name"), group_meta.get("name")),
        collection_key=(collection_group or {}).get("group_value"),
        frozen=bool(ownership.get("frozen")),
        burnt=bool(item.get("burnt")),
        deleted=bool(item.get("deleted")),
    )


def collection_name_for(asset: IndexedAsset) -> str:
    if asset.collection_name:
        return asset.collection_name
    prefix = asset.name.split("#")[0].strip() if asset.name else ""
    if prefix:
        return prefix
    if asset.collection_key:
        return asset.collection_key[:8] + "..."
    return UNCATEGORIZED


def _is_collectible_interface(asset: IndexedAsset) -> bool:
    if asset.interface not in NFT_INTERFACES:
        return False
    if asset.interface == "FungibleAsset":
        return asset.decimals == 0
    return True


def classify_asset(asset: IndexedAsset) -> ClassifiedAsset:
    excluded = ClassifiedAsset(kind=AssetKind.EXCLUDED, mint=asset.id, name=asset.name)
    # Frozen assets cannot be moved into escrow.
    if asset.burnt or asset.deleted or asset.frozen:
        return excluded

    if (
        asset.decimals == 0
        or _is_collectible_interface(asset)
        or NON_FUNGIBLE_MARKER in asset.token_standard.lower()
    ):
        return ClassifiedAsset(
            kind=AssetKind.COLLECTIBLE,
            mint=asset.id,
            name=asset.name or asset.id[:8],
            image=asset.image or DEFAULT_IMAGE,
            decimals=0,
            amount=float(asset.balance or 1),
            symbol=asset.symbol,
            collection=collection_name_for(asset),
            verified=asset.collection_key is not None,
        )

    if asset.decimals and asset.decimals > 0 and asset.interface in FUNGIBLE_INTERFACES:
        amount = asset.balance / (10 ** asset.decimals)
        if amount <= 0:
            return excluded
        return ClassifiedAsset(
            kind=AssetKind.FUNGIBLE_TOKEN,
            mint=asset.id,
            name=asset.name or asset.id[:8],
            image=asset.image,
            decimals=asset.decimals,
            amount=amount,
            symbol=asset.symbol or asset.id[:4],
        )
    return excluded


def classify(raw_assets: Iterable[dict]) -> AssetCatalog:
    catalog = AssetCatalog(source="das")
    for item in raw_assets:
        try:
            asset = parse_das_item(item)
        except (IndexerError, ValueError) as exc:
            logger.warning("das_item_skipped id=%s error=%s", item.get("id") if isinstance(item, dict) else None, exc)
            continue
        result = classify_asset(asset)
        if result.kind is AssetKind.COLLECTIBLE:
            catalog.collectibles.append(result)
        elif result.kind is AssetKind.FUNGIBLE_TOKEN:
            catalog.tokens.append(result)
    return catalog


def filter_prizes(catalog: AssetCatalog, blocked_keywords: Sequence[str], only_verified: bool = False) -> AssetCatalog:
    kept = []
    for nft in catalog.collectibles:
        name = nft.name.lower()
        if any(word in name for word in blocked_keywords):
            continue
        if only_verified and (not nft.verified or nft.collection == "None"):
            continue
        kept.append(nft)
    return AssetCatalog(collectibles=kept, tokens=list(catalog.tokens), source=catalog.source)


def group_collectibles(collectibles: Sequence[ClassifiedAsset]) -> List[dict]:
    groups: Dict[str, dict] = {}
    for nft in collectibles:
        key = nft.collection or UNCATEGORIZED
        group = groups.get(key)
        if group is None:
            group = groups[key] = {"name": key, "image": nft.image, "count": 0, "items": []}
        group["items"].append(nft.to_dict())
        group["count"] += 1
    return sorted(groups.values(), key=lambda g: g["count"], reverse=True)


def _rpc_post(http, url: str, body: dict, timeout: float) -> dict:
    resp = http.post(url, json=body, timeout=timeout)
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, dict):
        raise IndexerError("RPC returned a non-object payload")
    if data.get("error"):
        err = data["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise IndexerError(f"RPC error: {message}")
    return data


class DasIndexerStrategy:
    name = "das"

    def __init__(self, rpc_url: str, page_limit: int = 100, max_pages: int = 10, http=None, timeout: float = 15.0) -> None:
        self.rpc_url = rpc_url
        self.page_limit = page_limit
        self.max_pages = max_pages
        self.http = http or requests
        self.timeout = timeout

    def fetch_items(self, owner: str) -> List[dict]:
        items: List[dict] = []
        page = 1
        while page <= self.max_pages:
            body = {
                "jsonrpc": "2.0",
                "id": f"raffles-{page}",
                "method": "getAssetsByOwner",
                "params": {
                    "ownerAddress": owner,
                    "page": page,
                    "limit": self.page_limit,
                    "displayOptions": {"showCollectionMetadata": True, "showFungible": True},
                },
            }
            data = _rpc_post(self.http, self.rpc_url, body, self.timeout)
            result = data.get("result")
            if not isinstance(result, dict) or not isinstance(result.get("items"), list):
                raise IndexerError("Invalid DAS response structure")
            chunk = result["items"]
            items.extend(chunk)
            if len(chunk) < self.page_limit:
                break
            page += 1
        else:
            logger.warning("das_page_ceiling_reached owner=%s pages=%s items=%s", owner, self.max_pages, len(items))
        return items

    def fetch(self, owner: str) -> Result:
        try:
            return Result.success(classify(self.fetch_items(owner)))
        except IndexerError as exc:
            return Result.failure(exc)
        except (requests.RequestException, ValueError) as exc:
            return Result.failure(IndexerError(f"DAS request failed: {exc}"))


class TokenAccountStrategy:
    """Degraded path: raw token accounts across the legacy and Token-2022 programs."""

    name = "token_accounts"
    programs = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

    def __init__(self, rpc_url: str, http=None, timeout: float = 15.0) -> None:
        self.rpc_url = rpc_url
        self.http = http or requests
        self.timeout = timeout

    def fetch_accounts(self, owner: str) -> List[dict]:
        accounts: List[dict] = []
        for program in self.programs:
            body = {
                "jsonrpc": "2.0",
                "id": f"raffles-fallback-{program}",
                "method": "getTokenAccountsByOwner",
                "params": [owner, {"programId": str(program)}, {"encoding": "jsonParsed"}],
            }
            data = _rpc_post(self.http, self.rpc_url, body, self.timeout)
            value = (data.get("result") or {}).get("value")
            if not isinstance(value, list):
                raise IndexerError(f"Invalid token account response for {program}")
            accounts.extend(value)
        return accounts

    @staticmethod
    def classify_account(account: dict) -> Optional[ClassifiedAsset]:
        info = (((account.get("account") or {}).get("data") or {}).get("parsed") or {}).get("info") or {}
        mint = info.get("mint")
        if not mint or info.get("state") == "frozen":
            return None
        token_amount = info.get("tokenAmount") or {}
        decimals = int(token_amount.get("decimals") or 0)
        raw = int(token_amount.get("amount") or 0)
        if decimals == 0 and raw >= 1:
            return ClassifiedAsset(
                kind=AssetKind.COLLECTIBLE,
                mint=mint,
                name=f"NFT ({mint[:4]}...)",
                image=DEFAULT_IMAGE,
                amount=float(raw),
            )
        if decimals > 0 and raw > 0:
            return ClassifiedAsset(
                kind=AssetKind.FUNGIBLE_TOKEN,
                mint=mint,
                name="Token",
                decimals=decimals,
                amount=raw / (10 ** decimals),
                symbol=mint[:4],
            )
        return None

    def fetch(self, owner: str) -> Result:
        try:
            accounts = self.fetch_accounts(owner)
        except IndexerError as exc:
            return Result.failure(exc)
        except (requests.RequestException, ValueError) as exc:
            return Result.failure(IndexerError(f"Token account request failed: {exc}"))
        catalog = AssetCatalog(source=self.name)
        for account in accounts:
            asset = self.classify_account(account)
            if asset is None:
                continue
            if asset.kind is AssetKind.COLLECTIBLE:
                catalog.collectibles.append(asset)
            else:
                catalog.tokens.append(asset)
        return Result.success(catalog)


def default_strategies(rpc_url: str, page_limit: int = 100, max_pages: int = 10) -> list:
    return [DasIndexerStrategy(rpc_url, page_limit, max_pages), TokenAccountStrategy(rpc_url)]


def load_wallet_assets(owner: str, strategies: Sequence) -> Result:
    errors: List[str] = []
    for strategy in strategies:
        result = strategy.fetch(owner)
        if result.ok:
            if errors:
                logger.info("wallet_assets_fallback owner=%s source=%s", owner, strategy.name)
            return result
        logger.warning("wallet_assets_strategy_failed owner=%s source=%s error=%s", owner, strategy.name, result.error)
        errors.append(f"{strategy.name}: {result.error}")
    return Result.failure(IndexerError("Unable to load wallet assets", attempts=errors))
