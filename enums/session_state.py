"""
Enumerations for the session lifecycle.

A session moves ``CREATED -> MONITORING -> FUNDED -> TRADING`` and ends in one
of the terminal states ``DEPLETED``, ``STOPPED`` or ``FAILED``.
"""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """Possible states for a session."""

    CREATED = "created"
    MONITORING = "monitoring"
    FUNDED = "funded"
    TRADING = "trading"
    DEPLETED = "depleted"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SessionState.DEPLETED, SessionState.STOPPED, SessionState.FAILED})


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    def flipped(self) -> "TradeSide":
        return TradeSide.SELL if self is TradeSide.BUY else TradeSide.BUY


class TxStatus(str, Enum):
    """Estado de una transacción según el ledger."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


class TransferPurpose(str, Enum):
    REVENUE_COLLECTION = "REVENUE_COLLECTION"
