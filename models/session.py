"""
Represents one funding-to-depletion workflow.

The orchestrator owns the live instance; repositories only serialise it. All
amounts are native-coin ``Decimal`` values with 8 decimal places.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from enums.session_state import SessionState


def _now() -> int:
    return int(time.time())


class Session(BaseModel):
    session_id: str
    target_asset: str
    wallet_address: str
    market_id: Optional[str] = None
    owner_address: Optional[str] = None
    state: SessionState = SessionState.CREATED
    operating_balance: Decimal = Decimal("0")
    trade_count: int = 0
    failed_trade_count: int = 0
    consecutive_failures: int = 0
    volume: Decimal = Decimal("0")
    last_error: Optional[str] = None
    created_at: int = Field(default_factory=_now)
    last_activity_at: int = Field(default_factory=_now)
    completed_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def next_sequence(self) -> int:
        """Número del siguiente intento de trade (éxitos + fallos + 1)."""
        return self.trade_count + self.failed_trade_count + 1

    def touch(self) -> None:
        self.last_activity_at = _now()
