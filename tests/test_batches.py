from __future__ import annotations

import asyncio
from fractions import Fraction

import pytest
from conftest import FakeBlockhashes, FakeExistence, make_address
from solders.pubkey import Pubkey

from holder_rewards.batches import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    BatchBuilder,
    get_associated_token_address,
    partition,
)
from holder_rewards.rpc import RpcError
from holder_rewards.token_accounts import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from holder_rewards.weights import AllocatedHolder

MINT = Pubkey.from_string("GoLDppdjB1vDTPSGxyMJFqdnj134yH6Prg9eqsGDiw6A")
TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)


def allocated(payout: int) -> AllocatedHolder:
    return AllocatedHolder(
        address=make_address(),
        raw_amount=payout,
        bonus_amount=0,
        multiplier=1.0,
        points=Fraction(payout),
        share_fraction=Fraction(0),
        payout_amount=payout,
    )


def builder(existence=None, blockhashes=None, transfers_per_tx=3, token_program=TOKEN_PROGRAM):
    payer = Pubkey.from_string(make_address())
    return BatchBuilder(
        existence=existence or FakeExistence(),
        blockhashes=blockhashes or FakeBlockhashes(),
        payer=payer,
        source_token_account=get_associated_token_address(payer, MINT, token_program),
        mint=MINT,
        token_program=token_program,
        decimals=6,
        transfers_per_tx=transfers_per_tx,
    )


def test_partition_sizes():
    assert [len(w) for w in partition(list(range(7)), 3)] == [3, 3, 1]
    assert partition([], 3) == []
    with pytest.raises(ValueError):
        partition([1], 0)


def test_seven_recipients_make_three_batches_covering_everyone_once():
    recipients = [allocated(10 + i) for i in range(7)]
    hashes = FakeBlockhashes()

    batches = asyncio.run(builder(blockhashes=hashes).build(recipients))

    assert [len(b.recipients) for b in batches] == [3, 3, 1]
    assert [b.batch_id for b in batches] == [1, 2, 3]
    flat = [r.holder for b in batches for r in b.recipients]
    assert flat == recipients
    # blockhashes are fetched at send time, not here
    assert all(b.recent_blockhash is None for b in batches)
    assert hashes.issued == []


def test_missing_destination_gets_create_before_transfer():
    recipients = [allocated(5), allocated(6)]
    existing_ata = get_associated_token_address(
        Pubkey.from_string(recipients[0].address), MINT, TOKEN_PROGRAM
    )

    [batch] = asyncio.run(builder(existence=FakeExistence([existing_ata])).build(recipients))

    assert [r.destination_exists for r in batch.recipients] == [True, False]
    programs = [ix.program_id for ix in batch.instructions]
    assert programs == [TOKEN_PROGRAM, ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM]

    create = batch.instructions[1]
    assert create.accounts[1].pubkey == batch.recipients[1].destination
    assert create.accounts[2].pubkey == Pubkey.from_string(recipients[1].address)

    transfer = batch.instructions[2]
    assert transfer.data[0] == 12
    assert int.from_bytes(transfer.data[1:9], "little") == 6
    assert transfer.data[9] == 6
    assert transfer.accounts[2].pubkey == batch.recipients[1].destination
    assert batch.total_amount == 11


def test_token_2022_destination_uses_that_program():
    t22 = Pubkey.from_string(TOKEN_2022_PROGRAM_ID)
    [batch] = asyncio.run(builder(token_program=t22).build([allocated(1)]))

    holder = batch.recipients[0]
    owner = Pubkey.from_string(holder.holder.address)
    assert holder.destination == get_associated_token_address(owner, MINT, t22)
    assert batch.instructions[-1].program_id == t22


def test_existence_check_error_is_treated_as_missing():
    class Flaky:
        async def exists(self, address):
            raise RpcError("rate limited")

    [batch] = asyncio.run(builder(existence=Flaky()).build([allocated(3)]))

    assert batch.recipients[0].destination_exists is False
    assert batch.instructions[0].program_id == ASSOCIATED_TOKEN_PROGRAM_ID


def test_refresh_stamps_a_fresh_blockhash():
    hashes = FakeBlockhashes()
    b = builder(blockhashes=hashes)
    [batch] = asyncio.run(b.build([allocated(3)]))

    stamped = asyncio.run(b.refresh(batch))
    refreshed = asyncio.run(b.refresh(stamped))

    assert stamped.recent_blockhash == hashes.issued[0]
    assert refreshed.recent_blockhash == hashes.issued[1]
    assert refreshed.recent_blockhash != stamped.recent_blockhash
    assert refreshed.batch_id == batch.batch_id
    assert refreshed.instructions == batch.instructions
