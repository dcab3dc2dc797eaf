"""Policy tunables for trade sessions."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Union

_NETWORKS = ("mainnet", "testnet", "signet", "regtest")


@dataclass(frozen=True)
class TradeConfig:
    network: str = "regtest"
    round_timeout: float = 600.0
    payout_timeout: float = 86400.0
    deposit_confirmations: int = 3
    payout_confirmations: int = 1
    redirect_lock_blocks: int = 1008
    broadcast_retries: int = 3
    broadcast_retry_delay: float = 2.0
    fee_bump_factor: float = 1.5
    watch_restart_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.network not in _NETWORKS:
            raise ValueError(f"unknown network: {self.network}")
        for name in ("round_timeout", "payout_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("deposit_confirmations", "payout_confirmations", "redirect_lock_blocks"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.broadcast_retries < 0 or self.broadcast_retry_delay < 0:
            raise ValueError("broadcast retry settings cannot be negative")
        if self.fee_bump_factor < 1.0:
            raise ValueError("fee_bump_factor must be >= 1.0")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TradeConfig":
        return cls.from_dict(json.loads(Path(path).read_text()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
