from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import List, Protocol, Sequence, Tuple

from solders.pubkey import Pubkey

from .config import DistributionConfig
from .token_accounts import HolderRecord, short

log = logging.getLogger(__name__)


class BonusLookup(Protocol):
    async def fetch(self, address: str) -> Tuple[int, float]: ...


@dataclass(frozen=True)
class ScoredHolder:
    address: str
    raw_amount: int
    bonus_amount: int
    multiplier: float
    points: Fraction


@dataclass(frozen=True)
class AllocatedHolder:
    address: str
    raw_amount: int
    bonus_amount: int
    multiplier: float
    points: Fraction
    share_fraction: Fraction
    payout_amount: int


@dataclass
class ScoringResult:
    holders: List[ScoredHolder] = field(default_factory=list)
    total_points: Fraction = Fraction(0)
    dropped_malformed: int = 0
    lookup_defaults: int = 0


@dataclass
class AllocationResult:
    recipients: List[AllocatedHolder] = field(default_factory=list)
    pool: int = 0
    total_points: Fraction = Fraction(0)
    below_min_points: int = 0
    dust: int = 0

    @property
    def total_payout(self) -> int:
        return sum(r.payout_amount for r in self.recipients)


def compute_points(
    raw_amount: int,
    bonus_amount: int,
    multiplier: float,
    holder_weight: Fraction,
    bonus_weight: Fraction,
) -> Fraction:
    """(raw_amount * w1 + bonus_amount * w2) * multiplier, exactly."""
    base = raw_amount * holder_weight + bonus_amount * bonus_weight
    return base * Fraction(multiplier)


def _is_valid_address(address: str) -> bool:
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


async def _lookup(lookup: BonusLookup, address: str) -> Tuple[int, float, bool]:
    """Returns (bonus, multiplier, defaulted). Never raises for a holder."""
    try:
        bonus, multiplier = await lookup.fetch(address)
    except Exception as e:  # fails soft: bonus 0, multiplier 1.0
        log.warning("Bonus lookup failed for %s: %s", short(address), e)
        return 0, 1.0, True

    defaulted = False
    if bonus < 0:
        bonus, defaulted = 0, True
    if not multiplier >= 1.0:
        log.debug("Clamping multiplier %r for %s", multiplier, short(address))
        multiplier, defaulted = 1.0, True
    return int(bonus), float(multiplier), defaulted


async def score_holders(
    holders: Sequence[HolderRecord],
    lookup: BonusLookup,
    config: DistributionConfig,
) -> ScoringResult:
    """
    Scores every holder with its bonus signal and multiplier.

    Lookups run concurrently in groups of ``config.bonus_group_size`` with a
    short pause between groups. Output order follows input order, so the
    grouping never changes the result.
    """
    result = ScoringResult()

    valid: List[HolderRecord] = []
    for h in holders:
        if h.raw_amount <= 0:
            continue
        if not _is_valid_address(h.address):
            log.warning("Dropping malformed holder address: %r", h.address)
            result.dropped_malformed += 1
            continue
        valid.append(h)

    size = config.bonus_group_size
    for i in range(0, len(valid), size):
        group = valid[i : i + size]
        looked_up = await asyncio.gather(*(_lookup(lookup, h.address) for h in group))

        for holder, (bonus, multiplier, defaulted) in zip(group, looked_up):
            points = compute_points(
                holder.raw_amount,
                bonus,
                multiplier,
                config.holder_weight,
                config.bonus_weight,
            )
            result.holders.append(
                ScoredHolder(
                    address=holder.address,
                    raw_amount=holder.raw_amount,
                    bonus_amount=bonus,
                    multiplier=multiplier,
                    points=points,
                )
            )
            result.total_points += points
            result.lookup_defaults += int(defaulted)

        if i + size < len(valid) and config.bonus_group_delay_s > 0:
            await asyncio.sleep(config.bonus_group_delay_s)

    log.info("Scored %d holders, total points %.2f", len(result.holders), float(result.total_points))
    return result


def distributable_pool(balance: int, reserve: int, minimum: int) -> int | None:
    """
    Amount available for a run, or None when the run should be skipped
    (balance not above the minimum, or nothing left after the reserve).
    """
    if balance <= minimum:
        return None
    available = balance - reserve
    if available <= 0:
        return None
    return available


def allocate(
    scored: Sequence[ScoredHolder],
    pool: int,
    config: DistributionConfig,
) -> AllocationResult:
    if pool < 0:
        raise ValueError("pool must be non-negative")

    result = AllocationResult(pool=pool)

    eligible: List[ScoredHolder] = []
    for h in scored:
        if h.raw_amount <= 0:
            continue
        if h.points < config.min_points:
            result.below_min_points += 1
            continue
        eligible.append(h)

    total = sum((h.points for h in eligible), Fraction(0))
    result.total_points = total
    if total == 0:
        log.info("Total points is zero; nothing to distribute")
        return result

    for h in eligible:
        share = h.points / total
        # Floor division on exact rationals: the sum can never exceed the pool.
        payout = (pool * h.points) // total
        if payout < config.min_payout or payout <= 0:
            result.dust += 1
            continue
        result.recipients.append(
            AllocatedHolder(
                address=h.address,
                raw_amount=h.raw_amount,
                bonus_amount=h.bonus_amount,
                multiplier=h.multiplier,
                points=h.points,
                share_fraction=share,
                payout_amount=int(payout),
            )
        )

    if result.dust:
        log.info("Filtered out %d holders with dust payouts", result.dust)
    return result
