from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from solders.pubkey import Pubkey

from .token_accounts import short
from .weights import AllocatedHolder

log = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: List[AllocatedHolder] = field(default_factory=list)
    off_curve: int = 0
    invalid: int = 0

    @property
    def skipped(self) -> int:
        return self.off_curve + self.invalid


def validate_recipients(allocated: Iterable[AllocatedHolder]) -> ValidationResult:
    """
    Keeps recipients that can own an associated token account directly.

    Program-derived (off-curve) owners would make the ATA derivation fail
    and poison the whole batch, so they are dropped here, before any
    instruction is built.
    """
    result = ValidationResult()
    for holder in allocated:
        try:
            pubkey = Pubkey.from_string(holder.address)
        except ValueError:
            log.warning("Skipping invalid address: %s", short(holder.address))
            result.invalid += 1
            continue

        if not pubkey.is_on_curve():
            log.info("Skipping off-curve address (PDA): %s", short(holder.address))
            result.off_curve += 1
            continue

        result.valid.append(holder)

    if result.skipped:
        log.info("Filtered out %d off-curve/invalid addresses", result.skipped)
    return result
