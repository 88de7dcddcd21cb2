# repositories/funding_repository.py
from __future__ import annotations
from typing import Optional

from models.funding_split import FeeTransfer, FundingSplit
from repositories.session_repository import connect, resolve_db_path
from utils.logger import log_function


class FundingRepository:
    """
    Repartos de depósito (máximo uno por sesión) y auditoría de transferencias
    al pool de comisiones.
    La UNIQUE sobre idempotency_key es la segunda barrera contra cobrar dos veces.
    """

    def __init__(self, db_path: str | None = None):
        self.db_path = resolve_db_path(db_path)
        self._ensure_tables()

    def _ensure_tables(self):
        with connect(self.db_path) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS funding_splits (
                    session_id       TEXT PRIMARY KEY,
                    idempotency_key  TEXT NOT NULL UNIQUE,
                    payload          TEXT NOT NULL,
                    created_at       INTEGER
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS fee_transfers (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id  TEXT NOT NULL,
                    ok          INTEGER NOT NULL,
                    payload     TEXT NOT NULL,
                    created_at  INTEGER
                )
            ''')

    @log_function
    def save_split(self, split: FundingSplit) -> bool:
        """Un reparto no cambia nunca: si ya hay fila para la sesión se conserva. True si se insertó."""
        with connect(self.db_path) as conn:
            cur = conn.execute('''
                INSERT INTO funding_splits (session_id, idempotency_key, payload, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            ''', (split.session_id, split.idempotency_key, split.model_dump_json(), split.created_at))
            return cur.rowcount == 1

    def get_split(self, session_id: str) -> Optional[FundingSplit]:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT payload FROM funding_splits WHERE session_id = ?", (session_id,)).fetchone()
            return FundingSplit.model_validate_json(row["payload"]) if row else None

    def list_splits(self) -> list[FundingSplit]:
        with connect(self.db_path) as conn:
            rows = conn.execute("SELECT payload FROM funding_splits ORDER BY created_at ASC").fetchall()
            return [FundingSplit.model_validate_json(r["payload"]) for r in rows]

    @log_function
    def add_fee_transfer(self, transfer: FeeTransfer) -> None:
        with connect(self.db_path) as conn:
            conn.execute('''
                INSERT INTO fee_transfers (session_id, ok, payload, created_at)
                VALUES (?, ?, ?, ?)
            ''', (transfer.session_id, int(transfer.ok), transfer.model_dump_json(), transfer.created_at))

    def list_fee_transfers(self, session_id: str | None = None) -> list[FeeTransfer]:
        with connect(self.db_path) as conn:
            if session_id:
                rows = conn.execute(
                    "SELECT payload FROM fee_transfers WHERE session_id = ? ORDER BY id ASC", (session_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT payload FROM fee_transfers ORDER BY id ASC").fetchall()
            return [FeeTransfer.model_validate_json(r["payload"]) for r in rows]

    def has_fee_transfer(self, session_id: str) -> bool:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT 1 FROM fee_transfers WHERE session_id = ? LIMIT 1", (session_id,)).fetchone()
            return row is not None
