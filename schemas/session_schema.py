"""
Data schema definitions for the session control surface.

Dataclasses returned to a thin API/CLI layer. They never carry key material,
funding minimums or anything about privileged addresses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from models.session import Session


@dataclass
class SessionCreated:
    """Schema returned by ``create_session``."""

    session_id: str
    wallet_address: str


@dataclass
class SessionSnapshot:
    """Read-only view of a session."""

    session_id: str
    target_asset: str
    wallet_address: str
    state: str
    operating_balance: str
    trade_count: int
    failed_trade_count: int
    consecutive_failures: int
    volume: str
    created_at: int
    last_activity_at: int
    completed_at: Optional[int] = None
    last_error: Optional[str] = None
    loop_alive: bool = False

    @classmethod
    def from_session(cls, session: Session, loop_alive: bool = False) -> "SessionSnapshot":
        return cls(
            session_id=session.session_id,
            target_asset=session.target_asset,
            wallet_address=session.wallet_address,
            state=session.state.value,
            operating_balance=str(session.operating_balance),
            trade_count=session.trade_count,
            failed_trade_count=session.failed_trade_count,
            consecutive_failures=session.consecutive_failures,
            volume=str(session.volume),
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            completed_at=session.completed_at,
            last_error=session.last_error,
            loop_alive=loop_alive,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
