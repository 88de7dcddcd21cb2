from __future__ import annotations

import time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from enums.session_state import TransferPurpose


class FundingSplit(BaseModel):
    """Reparto único de un depósito: operating + fee == total (8 decimales)."""

    session_id: str
    total_amount: Decimal
    operating_amount: Decimal
    fee_amount: Decimal
    fee_address: str
    idempotency_key: str
    created_at: int = Field(default_factory=lambda: int(time.time()))


class FeeTransfer(BaseModel):
    """Entrada de auditoría de una transferencia al pool de comisiones."""

    session_id: str
    from_address: str
    to_address: str
    amount: Decimal
    ok: bool
    tx_ref: Optional[str] = None
    reason: Optional[str] = None
    purpose: TransferPurpose = TransferPurpose.REVENUE_COLLECTION
    created_at: int = Field(default_factory=lambda: int(time.time()))
