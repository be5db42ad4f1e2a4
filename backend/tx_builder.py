"""Fee split and payment transaction building for ticket purchases and raffle creation."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from borsh_construct import CStruct, U8, U32, U64
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey

from config import LAMPORTS_PER_SOL, NATIVE_DECIMALS, NATIVE_SYMBOL
from errors import InsufficientFunds, RaffleError, Result, ValidationError
from models import PendingPurchase, Raffle

logger = logging.getLogger("raffles.tx")

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
# Standard SPL Associated Token Program ID (same across clusters)
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

BPS_DENOMINATOR = 10_000
MINT_DECIMALS_OFFSET = 44  # COption<Pubkey> authority (36) + supply u64 (8)

SystemTransferLayout = CStruct("instruction" / U32, "lamports" / U64)
TransferCheckedLayout = CStruct("instruction" / U8, "amount" / U64, "decimals" / U8)

SYSTEM_TRANSFER = 2
TOKEN_TRANSFER_CHECKED = 12
ATA_CREATE = 0
ATA_CREATE_IDEMPOTENT = 1


def to_pubkey(value: str) -> Pubkey:
    return Pubkey.from_string(value)


def derive_ata(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def build_create_ata_ix(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    ata: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    idempotent: bool = False,
) -> Instruction:
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
    ]
    tag = ATA_CREATE_IDEMPOTENT if idempotent else ATA_CREATE
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=bytes([tag]), accounts=metas)


def build_system_transfer_ix(sender: Pubkey, recipient: Pubkey, lamports: int) -> Instruction:
    data = SystemTransferLayout.build({"instruction": SYSTEM_TRANSFER, "lamports": lamports})
    accounts = [
        AccountMeta(pubkey=sender, is_signer=True, is_writable=True),
        AccountMeta(pubkey=recipient, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id=SYS_PROGRAM_ID, data=data, accounts=accounts)


def build_transfer_checked_ix(
    source: Pubkey,
    mint: Pubkey,
    dest: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    data = TransferCheckedLayout.build(
        {"instruction": TOKEN_TRANSFER_CHECKED, "amount": amount, "decimals": decimals}
    )
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=token_program, data=data, accounts=metas)


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(bytes(ix.data)).decode(),
    }


def message_from_instructions(ixs: List[Instruction], payer: Pubkey, blockhash: str) -> str:
    message = MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
    return base64.b64encode(bytes(message)).decode()


def unit_price_units(price: Decimal, decimals: int) -> int:
    scaled = Decimal(str(price)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_HALF_UP))


def split_commission(unit_units: int, commission_bps: int) -> Tuple[int, int]:
    """Per-ticket (commission, creator) split; commission is floored so the two always sum to the price."""
    if unit_units < 0:
        raise ValueError("unit price must be non-negative")
    commission = unit_units * commission_bps // BPS_DENOMINATOR
    return commission, unit_units - commission


@dataclass(frozen=True)
class MintInfo:
    mint: Pubkey
    token_program: Pubkey
    decimals: int
    from_chain: bool = True


@dataclass
class PurchasePlan:
    pending: PendingPurchase
    instructions: List[Instruction]
    payer: Pubkey
    # (destination account, amount in smallest units) the buyer must pay
    legs: List[Tuple[str, int]] = field(default_factory=list)

    def summary(self) -> dict:
        p = self.pending
        return {
            "raffle_id": p.raffle_id,
            "quantity": p.quantity,
            "currency": p.currency,
            "decimals": p.decimals,
            "unit_price_units": p.unit_price_units,
            "commission_per_ticket": p.commission_per_ticket,
            "creator_per_ticket": p.creator_per_ticket,
            "commission_total": p.commission_total,
            "creator_total": p.creator_total,
            "total_units": p.total_units,
        }


def parse_mint_decimals(data: bytes) -> int:
    if len(data) <= MINT_DECIMALS_OFFSET:
        raise ValueError(f"Mint account too short: {len(data)} bytes")
    return data[MINT_DECIMALS_OFFSET]


class PurchaseBuilder:
    """Builds the ordered transfer instructions for a ticket purchase.

    The only I/O is read-only: the mint account (owning program + decimals)
    and associated-token-account existence checks.
    """

    def __init__(
        self,
        sol_client,
        treasury: str,
        commission_bps: int = 475,
        default_token_decimals: int = 6,
    ) -> None:
        self.sol_client = sol_client
        self.treasury = to_pubkey(treasury)
        self.commission_bps = commission_bps
        self.default_token_decimals = default_token_decimals

    def mint_info(self, mint: Pubkey) -> MintInfo:
        try:
            resp = self.sol_client.get_account_info(mint)
            account = resp.value
            if account is None or account.data is None:
                raise ValueError("mint account not found")
            decimals = parse_mint_decimals(bytes(account.data))
            return MintInfo(mint=mint, token_program=account.owner, decimals=decimals)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "mint_info_lookup_failed mint=%s default_decimals=%s error=%s",
                mint,
                self.default_token_decimals,
                exc,
            )
            return MintInfo(
                mint=mint,
                token_program=TOKEN_PROGRAM_ID,
                decimals=self.default_token_decimals,
                from_chain=False,
            )

    def account_exists(self, address: Pubkey) -> Optional[bool]:
        """True/False when the RPC answered, None when the lookup itself failed."""
        try:
            resp = self.sol_client.get_account_info(address)
        except Exception as exc:  # noqa: BLE001
            logger.warning("account_lookup_failed address=%s error=%s", address, exc)
            return None
        return resp.value is not None

    def price_plan(self, raffle: Raffle, quantity: int, buyer: str, decimals: int) -> PendingPurchase:
        units = unit_price_units(raffle.price, decimals)
        commission, creator_share = split_commission(units, self.commission_bps)
        return PendingPurchase(
            raffle_id=raffle.id,
            buyer=buyer,
            creator=raffle.creator,
            quantity=quantity,
            currency=raffle.payment_symbol if not raffle.is_native else NATIVE_SYMBOL,
            decimals=decimals,
            unit_price_units=units,
            commission_per_ticket=commission,
            creator_per_ticket=creator_share,
            mint=None if raffle.is_native else raffle.payment_mint,
        )

    def build_purchase(self, raffle: Raffle, quantity: int, buyer: str) -> Result:
        try:
            return Result.success(self._build(raffle, quantity, buyer))
        except RaffleError as exc:
            return Result.failure(exc)

    def _build(self, raffle: Raffle, quantity: int, buyer: str) -> PurchasePlan:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.", quantity=quantity)
        if raffle.price <= 0:
            raise ValidationError("Raffle has no valid ticket price.", raffle_id=raffle.id)
        try:
            buyer_pk = to_pubkey(buyer)
            creator_pk = to_pubkey(raffle.creator)
        except Exception as exc:  # noqa: BLE001
            raise ValidationError(f"Invalid wallet address: {exc}") from exc

        if raffle.is_native:
            pending = self.price_plan(raffle, quantity, buyer, NATIVE_DECIMALS)
            instructions = self._native_transfers(pending, buyer_pk, creator_pk)
            legs = self.payment_legs(pending, self.treasury, creator_pk)
        else:
            if not raffle.payment_mint:
                raise ValidationError("Token-priced raffle has no payment mint.", raffle_id=raffle.id)
            info = self.mint_info(to_pubkey(raffle.payment_mint))
            pending = self.price_plan(raffle, quantity, buyer, info.decimals)
            instructions = self._token_transfers(pending, info, buyer_pk, creator_pk)
            legs = self.payment_legs(
                pending,
                derive_ata(self.treasury, info.mint, info.token_program),
                derive_ata(creator_pk, info.mint, info.token_program),
            )

        logger.info(
            "purchase_built raffle=%s buyer=%s quantity=%s currency=%s commission=%s creator=%s ixs=%s",
            raffle.id,
            buyer,
            quantity,
            pending.currency,
            pending.commission_total,
            pending.creator_total,
            len(instructions),
        )
        return PurchasePlan(pending=pending, instructions=instructions, payer=buyer_pk, legs=legs)

    @staticmethod
    def payment_legs(pending: PendingPurchase, treasury_dest: Pubkey, creator_dest: Pubkey) -> List[Tuple[str, int]]:
        legs = []
        if pending.commission_total > 0:
            legs.append((str(treasury_dest), pending.commission_total))
        legs.append((str(creator_dest), pending.creator_total))
        return legs

    def _native_transfers(self, pending: PendingPurchase, buyer: Pubkey, creator: Pubkey) -> List[Instruction]:
        instructions: List[Instruction] = []
        if pending.commission_total > 0:
            instructions.append(build_system_transfer_ix(buyer, self.treasury, pending.commission_total))
        instructions.append(build_system_transfer_ix(buyer, creator, pending.creator_total))
        return instructions

    def _token_transfers(
        self,
        pending: PendingPurchase,
        info: MintInfo,
        buyer: Pubkey,
        creator: Pubkey,
    ) -> List[Instruction]:
        program = info.token_program
        buyer_ata = derive_ata(buyer, info.mint, program)
        if not self.account_exists(buyer_ata):
            raise InsufficientFunds(
                f"You don't have any ${pending.currency} tokens in your wallet.",
                mint=str(info.mint),
            )

        instructions: List[Instruction] = []
        destinations = []
        for owner in (self.treasury, creator):
            ata = derive_ata(owner, info.mint, program)
            exists = self.account_exists(ata)
            if not exists:
                # Unknown existence uses the idempotent form so an existing account does not fail the tx.
                instructions.append(
                    build_create_ata_ix(buyer, owner, info.mint, ata, program, idempotent=exists is None)
                )
            destinations.append(ata)
        treasury_ata, creator_ata = destinations

        if pending.commission_total > 0:
            instructions.append(
                build_transfer_checked_ix(
                    buyer_ata, info.mint, treasury_ata, buyer, pending.commission_total, info.decimals, program
                )
            )
        instructions.append(
            build_transfer_checked_ix(
                buyer_ata, info.mint, creator_ata, buyer, pending.creator_total, info.decimals, program
            )
        )
        return instructions


def creation_fee_lamports(base_fee_sol: float, holder_fee_sol: float, holder_only: bool) -> int:
    total = Decimal(str(base_fee_sol))
    if holder_only:
        total += Decimal(str(holder_fee_sol))
    return unit_price_units(total, NATIVE_DECIMALS)


def build_creation_fee_ixs(creator: Pubkey, treasury: Pubkey, lamports: int) -> List[Instruction]:
    # Prize escrow is not part of this transaction; only the platform fee moves.
    if lamports <= 0:
        raise ValidationError("Creation fee must be positive.")
    return [build_system_transfer_ix(creator, treasury, lamports)]


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL
