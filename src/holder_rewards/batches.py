from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple, TypeVar

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from .rpc import AsyncRpcClient, RpcError
from .token_accounts import short
from .weights import AllocatedHolder

ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# SPL Token TransferChecked; works for both the classic and Token-2022 programs
TRANSFER_CHECKED_IX = 12
# Associated Token Account program CreateIdempotent
CREATE_ATA_IDEMPOTENT_IX = 1

log = logging.getLogger(__name__)

T = TypeVar("T")


class AccountExistenceCheck(Protocol):
    async def exists(self, address: Pubkey) -> bool: ...


class BlockhashSource(Protocol):
    async def get_latest_blockhash(self) -> str: ...


class RpcAccountExistence:
    def __init__(self, rpc: AsyncRpcClient) -> None:
        self.rpc = rpc

    async def exists(self, address: Pubkey) -> bool:
        return await self.rpc.get_account_info_base64(str(address)) is not None


@dataclass(frozen=True)
class BatchRecipient:
    holder: AllocatedHolder
    destination: Pubkey
    destination_exists: bool


@dataclass(frozen=True)
class TransferBatch:
    batch_id: int
    recipients: Tuple[BatchRecipient, ...]
    instructions: Tuple[Instruction, ...]
    recent_blockhash: Optional[str] = None

    @property
    def total_amount(self) -> int:
        return sum(r.holder.payout_amount for r in self.recipients)


def get_associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    """Derive the associated token account address."""
    seeds = [bytes(owner), bytes(token_program), bytes(mint)]
    ata, _ = Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    return ata


def build_create_ata_ix(
    payer: Pubkey,
    ata: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=token_program, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, bytes([CREATE_ATA_IDEMPOTENT_IX]), accounts)


def build_transfer_checked_ix(
    source: Pubkey,
    mint: Pubkey,
    dest: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    token_program: Pubkey,
) -> Instruction:
    data = bytes([TRANSFER_CHECKED_IX]) + amount.to_bytes(8, "little") + bytes([decimals])
    accounts = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(token_program, data, accounts)


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("size must be >= 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchBuilder:
    """
    Packs validated recipients into fixed-size transfer batches.

    Batches come out without a blockhash; ``refresh`` stamps one just
    before a batch is sent, since blockhashes expire after about a minute.
    """

    def __init__(
        self,
        existence: AccountExistenceCheck,
        blockhashes: BlockhashSource,
        payer: Pubkey,
        source_token_account: Pubkey,
        mint: Pubkey,
        token_program: Pubkey,
        decimals: int,
        transfers_per_tx: int,
    ) -> None:
        self.existence = existence
        self.blockhashes = blockhashes
        self.payer = payer
        self.source_token_account = source_token_account
        self.mint = mint
        self.token_program = token_program
        self.decimals = decimals
        self.transfers_per_tx = transfers_per_tx

    async def _destination_exists(self, ata: Pubkey) -> bool:
        try:
            return await self.existence.exists(ata)
        except RpcError as e:
            # CreateIdempotent is a no-op for an existing account.
            log.warning("Could not check token account %s: %s", short(str(ata)), e)
            return False

    async def _recipients_for(self, window: Sequence[AllocatedHolder]) -> List[BatchRecipient]:
        destinations = [
            get_associated_token_address(Pubkey.from_string(h.address), self.mint, self.token_program)
            for h in window
        ]
        exists = await asyncio.gather(*(self._destination_exists(d) for d in destinations))
        return [
            BatchRecipient(holder=h, destination=d, destination_exists=e)
            for h, d, e in zip(window, destinations, exists)
        ]

    def instructions_for(self, recipients: Sequence[BatchRecipient]) -> List[Instruction]:
        ixs: List[Instruction] = []
        for r in recipients:
            owner = Pubkey.from_string(r.holder.address)
            if not r.destination_exists:
                ixs.append(
                    build_create_ata_ix(self.payer, r.destination, owner, self.mint, self.token_program)
                )
            ixs.append(
                build_transfer_checked_ix(
                    source=self.source_token_account,
                    mint=self.mint,
                    dest=r.destination,
                    owner=self.payer,
                    amount=r.holder.payout_amount,
                    decimals=self.decimals,
                    token_program=self.token_program,
                )
            )
        return ixs

    async def build(self, recipients: Sequence[AllocatedHolder]) -> List[TransferBatch]:
        batches: List[TransferBatch] = []
        for batch_id, window in enumerate(partition(recipients, self.transfers_per_tx), start=1):
            batch_recipients = await self._recipients_for(window)
            batches.append(
                TransferBatch(
                    batch_id=batch_id,
                    recipients=tuple(batch_recipients),
                    instructions=tuple(self.instructions_for(batch_recipients)),
                )
            )

        created = sum(not r.destination_exists for b in batches for r in b.recipients)
        log.info(
            "Created %d batches for %d transfers (%d new token accounts)",
            len(batches),
            len(recipients),
            created,
        )
        return batches

    async def refresh(self, batch: TransferBatch) -> TransferBatch:
        """Same batch, fresh blockhash. Only for batches that never landed."""
        blockhash = await self.blockhashes.get_latest_blockhash()
        return dataclasses.replace(batch, recent_blockhash=blockhash)
