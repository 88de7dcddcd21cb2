"""
Persistence facade used by the orchestrator and the recovery sweep.

Every ``save`` runs in its own SQLite transaction, so a crash leaves either
the old or the new record. Sessions and wallets are upserts keyed by identity;
funding splits are written once and never replaced.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from enums.session_state import SessionState, TERMINAL_STATES
from models.funding_split import FeeTransfer, FundingSplit
from models.session import Session
from models.trade_record import TradeRecord
from models.wallet_record import WalletRecord
from repositories.funding_repository import FundingRepository
from repositories.session_repository import SessionRepository
from repositories.trade_repository import TradeRepository
from repositories.wallet_repository import WalletRepository
from utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)


class PersistenceService:
    def __init__(self, db_path: str | None = None) -> None:
        self.sessions = SessionRepository(db_path)
        self.db_path = self.sessions.db_path
        self.funding = FundingRepository(self.db_path)
        self.wallets = WalletRepository(self.db_path)
        self.trades = TradeRepository(self.db_path)

    # ---------- escritura ----------
    def save(self, entity: Session | FundingSplit | WalletRecord) -> None:
        if isinstance(entity, Session):
            self.sessions.upsert(entity)
        elif isinstance(entity, FundingSplit):
            self.funding.save_split(entity)
        elif isinstance(entity, WalletRecord):
            self.wallets.save(entity)
        else:
            raise TypeError(f"Entidad no persistible: {type(entity).__name__}")

    def append_trade(self, record: TradeRecord) -> bool:
        return self.trades.append(record)

    def add_fee_transfer(self, transfer: FeeTransfer) -> None:
        self.funding.add_fee_transfer(transfer)

    # ---------- lectura ----------
    @log_function
    def load_all_non_terminal_sessions(self) -> List[Session]:
        return self.sessions.list_non_terminal()

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def list_sessions(self, limit: int = 1000) -> List[Session]:
        return self.sessions.list_all(limit=limit)

    def get_split(self, session_id: str) -> Optional[FundingSplit]:
        return self.funding.get_split(session_id)

    def list_splits(self) -> List[FundingSplit]:
        return self.funding.list_splits()

    def list_fee_transfers(self, session_id: str | None = None) -> List[FeeTransfer]:
        return self.funding.list_fee_transfers(session_id)

    def has_fee_transfer(self, session_id: str) -> bool:
        return self.funding.has_fee_transfer(session_id)

    def get_session_wallet(self, session_id: str) -> Optional[WalletRecord]:
        return self.wallets.get_session_wallet(session_id)

    def list_wallets(self, session_id: str | None = None) -> List[WalletRecord]:
        if session_id:
            return self.wallets.list_for_session(session_id)
        return self.wallets.list_all()

    def last_trade(self, session_id: str) -> Optional[TradeRecord]:
        return self.trades.last_for_session(session_id)

    def list_trades(self, session_id: str | None = None) -> List[TradeRecord]:
        if session_id:
            return self.trades.list_for_session(session_id)
        return self.trades.list_all()

    def trades_since(self, session_id: str, sequence: int) -> List[TradeRecord]:
        return self.trades.list_from_sequence(session_id, sequence)

    # ---------- mantenimiento ----------
    @log_function
    def purge_terminal_sessions(self, older_than_days: int) -> List[str]:
        """
        Borra sesiones terminales completadas antes del corte y sus trades.
        Las wallets y los repartos se conservan (auditoría y acceso a fondos).
        """
        cutoff = int(time.time()) - int(older_than_days) * 86400
        purged = self.sessions.terminal_ids_completed_before(cutoff)
        for session_id in purged:
            removed = self.trades.delete_for_session(session_id)
            self.sessions.delete(session_id)
            logger.info(f"🧹 [{session_id}] sesión purgada (trades borrados={removed})")
        return purged

    def session_stats(self) -> Dict[str, int]:
        counts = self.sessions.count_by_state()
        terminal = {s.value for s in TERMINAL_STATES}
        return {
            "total": sum(counts.values()),
            "active": sum(n for st, n in counts.items() if st not in terminal),
            "monitoring": counts.get(SessionState.MONITORING.value, 0),
            "trading": counts.get(SessionState.TRADING.value, 0),
            **{st: counts.get(st, 0) for st in sorted(terminal)},
        }

    # ---------- snapshot completo (backups) ----------
    def export_snapshot(self) -> Dict[str, Any]:
        return {
            "sessions": [s.model_dump(mode="json") for s in self.sessions.list_all(limit=1_000_000)],
            "funding_splits": [s.model_dump(mode="json") for s in self.funding.list_splits()],
            "fee_transfers": [t.model_dump(mode="json") for t in self.funding.list_fee_transfers()],
            "wallets": [w.model_dump(mode="json") for w in self.wallets.list_all()],
            "trades": [t.model_dump(mode="json") for t in self.trades.list_all()],
        }

    @log_function
    def import_snapshot(self, snapshot: Dict[str, Any]) -> Dict[str, int]:
        """
        Restaura solo lo que falta. Sesiones, repartos y wallets ya presentes se
        conservan tal cual (una sesión DEPLETED no vuelve a TRADING con el saldo
        viejo); trades y fee_transfers existentes no se duplican.
        Los recuentos devueltos son filas realmente insertadas.
        """
        counts = {"sessions": 0, "funding_splits": 0, "fee_transfers": 0, "wallets": 0, "trades": 0}
        for raw in snapshot.get("wallets", []):
            if self.wallets.insert_if_absent(WalletRecord.model_validate(raw)):
                counts["wallets"] += 1
        skipped = []
        for raw in snapshot.get("sessions", []):
            session = Session.model_validate(raw)
            if self.sessions.insert_if_absent(session):
                counts["sessions"] += 1
            else:
                skipped.append(session.session_id)
        if skipped:
            logger.info(f"♻️ {len(skipped)} sesiones ya presentes se conservan: {skipped}")
        for raw in snapshot.get("funding_splits", []):
            if self.funding.save_split(FundingSplit.model_validate(raw)):
                counts["funding_splits"] += 1
        existing_fee_sessions = {t.session_id for t in self.funding.list_fee_transfers()}
        for raw in snapshot.get("fee_transfers", []):
            transfer = FeeTransfer.model_validate(raw)
            if transfer.session_id in existing_fee_sessions:
                continue
            self.funding.add_fee_transfer(transfer)
            counts["fee_transfers"] += 1
        for raw in snapshot.get("trades", []):
            if self.trades.append(TradeRecord.model_validate(raw)):
                counts["trades"] += 1
        return counts
