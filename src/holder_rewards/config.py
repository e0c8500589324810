from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from fractions import Fraction
from typing import Any, Dict

from dotenv import load_dotenv
from solders.keypair import Keypair

from .project_constants import HISTORY_FILE, MIN_DISTRIBUTION_RAW


def history_path_from_env() -> str:
    load_dotenv()
    return os.getenv("HISTORY_FILE", "").strip() or HISTORY_FILE


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    keypair_path: str = "keypair_distro.json"
    distributor_token_account: str | None = None
    history_path: str = HISTORY_FILE

    @staticmethod
    def from_env(rpc_url_override: str | None = None) -> "Settings":
        load_dotenv()

        keypair_path = os.getenv("DISTRIBUTOR_KEYPAIR", "").strip() or "keypair_distro.json"
        token_account = os.getenv("DISTRIBUTOR_TOKEN_ACCOUNT", "").strip() or None
        history_path = history_path_from_env()

        def build(rpc_url: str) -> "Settings":
            return Settings(
                rpc_url=rpc_url,
                keypair_path=keypair_path,
                distributor_token_account=token_account,
                history_path=history_path,
            )

        # If user provides --rpc-url, trust it.
        if rpc_url_override:
            return build(rpc_url_override)

        # Otherwise, use RPC_URL from env if present, else build helius url from key.
        env_rpc = os.getenv("RPC_URL", "").strip()
        if env_rpc:
            return build(env_rpc)

        helius_key = os.getenv("HELIUS_API_KEY", "").strip()
        if not helius_key:
            raise RuntimeError(
                "Missing HELIUS_API_KEY (or RPC_URL). Put it in .env or export it."
            )

        return build(f"https://mainnet.helius-rpc.com/?api-key={helius_key}")


@dataclass(frozen=True)
class DistributionConfig:
    """Tunables for one distribution run.

    Amounts (``min_payout``, ``reserve``, ``min_distribution``) are raw
    base units of the distribution token. ``min_points`` is in points.
    """

    transfers_per_tx: int = 3
    concurrency: int = 6
    max_attempts: int = 3
    retry_backoff_s: float = 2.0
    attempt_timeout_s: float = 60.0
    confirm_poll_s: float = 1.0
    bonus_group_size: int = 50
    bonus_group_delay_s: float = 0.1
    holder_weight: Fraction = Fraction(1)
    bonus_weight: Fraction = Fraction(2)
    min_points: Fraction = Fraction(0)
    min_payout: int = 1
    reserve: int = 0
    min_distribution: int = MIN_DISTRIBUTION_RAW

    def __post_init__(self) -> None:
        # Weights may be passed as int/float/str; keep them exact.
        for name in ("holder_weight", "bonus_weight", "min_points"):
            object.__setattr__(self, name, Fraction(getattr(self, name)))

        if self.transfers_per_tx < 1:
            raise ValueError("transfers_per_tx must be >= 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.bonus_group_size < 1:
            raise ValueError("bonus_group_size must be >= 1")
        if self.holder_weight < 0 or self.bonus_weight < 0:
            raise ValueError("weights must be non-negative")
        if self.min_points < 0 or self.min_payout < 0:
            raise ValueError("dust thresholds must be non-negative")
        if self.reserve < 0 or self.min_distribution < 0:
            raise ValueError("reserve and min_distribution must be non-negative")
        if min(self.retry_backoff_s, self.bonus_group_delay_s) < 0:
            raise ValueError("delays must be non-negative")
        if self.attempt_timeout_s <= 0 or self.confirm_poll_s <= 0:
            raise ValueError("timeouts must be positive")

    @staticmethod
    def from_env() -> "DistributionConfig":
        """Builds a config from ``DIST_<FIELD>`` environment overrides."""
        load_dotenv()

        overrides: Dict[str, Any] = {}
        for f in fields(DistributionConfig):
            raw = os.getenv(f"DIST_{f.name.upper()}", "").strip()
            if not raw:
                continue
            default = getattr(DistributionConfig, f.name)
            if isinstance(default, Fraction):
                overrides[f.name] = Fraction(raw)
            elif isinstance(default, float):
                overrides[f.name] = float(raw)
            else:
                overrides[f.name] = int(raw)
        return DistributionConfig(**overrides)


def load_keypair(path: str) -> Keypair:
    """Loads a Solana CLI keypair file (JSON array of 64 bytes)."""
    with open(path, "r", encoding="utf-8") as f:
        secret = json.load(f)
    if not isinstance(secret, list) or len(secret) != 64:
        raise RuntimeError(f"Keypair file {path} is not a 64-byte JSON array.")
    return Keypair.from_bytes(bytes(secret))
