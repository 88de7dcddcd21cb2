from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from enums.session_state import TradeSide


class TradeRecord(BaseModel):
    """Intento de swap (éxito o fallo). Solo se añade, nunca se modifica."""

    session_id: str
    sequence: int
    side: TradeSide
    amount: Decimal
    ok: bool
    tx_ref: Optional[str] = None
    reason: Optional[str] = None
    trade_wallet: Optional[str] = None
    # fondos de un BUY fallido que no volvieron a la wallet de sesión
    stranded: Decimal = Decimal("0")
    created_at: int = Field(default_factory=lambda: int(time.time()))


class SwapQuote(BaseModel):
    from_asset: str
    to_asset: str
    amount: Decimal
    expected_output: Decimal
    price_impact: float = 0.0
    route: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class TradeResult:
    """Resultado tipado que sube hasta el borde del bucle de trading."""

    ok: bool
    tx_ref: Optional[str] = None
    reason: Optional[str] = None
    stranded: Decimal = Decimal("0")

    @classmethod
    def success(cls, tx_ref: str) -> "TradeResult":
        return cls(ok=True, tx_ref=tx_ref)

    @classmethod
    def failure(cls, reason: str, tx_ref: Optional[str] = None) -> "TradeResult":
        return cls(ok=False, tx_ref=tx_ref, reason=reason)
