"""
Read-only view of the spell program's per-user state.

A user's rune balance is the secondary bonus signal for scoring, and an
active spell buff plus a rune holding bonus form the multiplier.
"""
from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple

from solders.pubkey import Pubkey

from .project_constants import SPELL_PROGRAM_ID
from .rpc import AsyncRpcClient, RpcError

log = logging.getLogger(__name__)

RUNE_DECIMALS = 6
# 1% per 10,000 whole runes, capped at 20%
RUNE_BONUS_PER_10K = 0.01
RUNE_BONUS_CAP = 0.20

DEFAULT_BONUS: Tuple[int, float] = (0, 1.0)

# Anchor discriminator(8) | owner(32) | runes(8) | 4 x book counters(32) |
# multiplier f64(8) | buff_expiry i64(8)
_USER_STATE_HEAD = struct.Struct("<8s32sQ4Qdq")


@dataclass(frozen=True)
class UserSpellState:
    owner: str
    runes: int
    multiplier: float
    buff_expiry: int


def user_state_address(owner: str, program_id: str = SPELL_PROGRAM_ID) -> Pubkey:
    pda, _ = Pubkey.find_program_address(
        [b"user", bytes(Pubkey.from_string(owner))],
        Pubkey.from_string(program_id),
    )
    return pda


def parse_user_state(data: bytes) -> UserSpellState | None:
    if len(data) < _USER_STATE_HEAD.size:
        return None
    _, owner, runes, _n, _a, _m, _l, multiplier, buff_expiry = _USER_STATE_HEAD.unpack_from(data)
    return UserSpellState(
        owner=str(Pubkey(owner)),
        runes=runes,
        multiplier=multiplier,
        buff_expiry=buff_expiry,
    )


def rune_bonus(runes: int) -> float:
    whole_runes = runes / (10**RUNE_DECIMALS)
    return min(whole_runes / 10_000 * RUNE_BONUS_PER_10K, RUNE_BONUS_CAP)


def effective_multiplier(state: UserSpellState, now: int) -> float:
    spell = 1.0
    if state.buff_expiry > 0 and now < state.buff_expiry and state.multiplier > 0:
        spell = state.multiplier
    return spell + rune_bonus(state.runes)


class SpellStateLookup:
    """
    Bonus lookup against the spell program.

    Use as ``async with SpellStateLookup(rpc) as lookup``: entering checks
    once that the program is deployed; if it is not, every lookup returns
    the defaults without touching the network.
    """

    def __init__(
        self,
        rpc: AsyncRpcClient,
        program_id: str = SPELL_PROGRAM_ID,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rpc = rpc
        self.program_id = program_id
        self.clock = clock
        self._program_live: bool | None = None

    async def __aenter__(self) -> "SpellStateLookup":
        try:
            info = await self.rpc.get_account_info_base64(self.program_id)
        except RpcError as e:
            log.warning("Could not load spell program %s: %s", self.program_id, e)
            info = None
        self._program_live = bool(info and info["executable"])
        if not self._program_live:
            log.warning("Spell program unavailable; using base multipliers for everyone")
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._program_live = None

    async def fetch(self, address: str) -> Tuple[int, float]:
        if self._program_live is False:
            return DEFAULT_BONUS

        pda = user_state_address(address, self.program_id)
        try:
            info = await self.rpc.get_account_info_base64(str(pda))
        except RpcError as e:
            log.warning("Could not fetch spell state for %s...: %s", address[:8], e)
            return DEFAULT_BONUS

        # User never initialised
        if info is None or info["owner"] != self.program_id:
            return DEFAULT_BONUS

        state = parse_user_state(info["data"])
        if state is None:
            log.warning("Undecodable spell state for %s...", address[:8])
            return DEFAULT_BONUS

        return state.runes, effective_multiplier(state, int(self.clock()))
