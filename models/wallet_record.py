"""
Issued keypair records.

Session wallets live as long as their session; trade wallets are single-use and
keyed additionally by sequence number and side. Only the wallet service turns the
stored key material back into a signer.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_serializer

from enums.session_state import TradeSide


class WalletKind(str, Enum):
    SESSION = "session"
    TRADE = "trade"
    EMERGENCY = "emergency"


class WalletRecord(BaseModel):
    address: str
    private_key: SecretStr
    session_id: str
    kind: WalletKind = WalletKind.SESSION
    sequence: Optional[int] = None
    side: Optional[TradeSide] = None
    replaces: Optional[str] = None
    issued_at: int = Field(default_factory=lambda: int(time.time()))

    @field_serializer("private_key", when_used="json")
    def _dump_key(self, value: SecretStr) -> str:
        # la persistencia necesita el material real
        return value.get_secret_value()

    @property
    def record_key(self) -> str:
        if self.kind is WalletKind.TRADE:
            side = self.side.value if self.side else "?"
            return f"{self.session_id}:{self.sequence}:{side}"
        if self.kind is WalletKind.EMERGENCY:
            return f"{self.session_id}:emergency:{self.address}"
        return self.session_id

    @property
    def has_key_material(self) -> bool:
        return bool(self.private_key.get_secret_value().strip())
