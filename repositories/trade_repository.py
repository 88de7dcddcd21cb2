# repositories/trade_repository.py
from __future__ import annotations
import sqlite3
from typing import Optional

from models.trade_record import TradeRecord
from repositories.session_repository import connect, resolve_db_path
from utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)


class TradeRepository:
    """
    Registro append-only de intentos de swap (UNA fila por intento).
    - (session_id, sequence) es único: un mismo intento no se registra dos veces.
    - El lado del último registro permite reconstruir la alternancia BUY/SELL.
    """
    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = resolve_db_path(db_path)
        self._ensure_table()

    def _ensure_table(self) -> None:
        with connect(self.db_path) as c:
            c.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id  TEXT NOT NULL,
                sequence    INTEGER NOT NULL,
                side        TEXT NOT NULL,
                ok          INTEGER NOT NULL,
                payload     TEXT NOT NULL,
                created_at  INTEGER,
                UNIQUE(session_id, sequence)
            )
            """)

    @log_function
    def append(self, record: TradeRecord) -> bool:
        """Inserta el intento. Devuelve False si ese (session, sequence) ya existía."""
        try:
            with connect(self.db_path) as c:
                c.execute("""
                    INSERT INTO trades (session_id, sequence, side, ok, payload, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    record.session_id, record.sequence, record.side.value,
                    int(record.ok), record.model_dump_json(), record.created_at,
                ))
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"[{record.session_id}] intento #{record.sequence} ya registrado; se conserva el original")
            return False

    def last_for_session(self, session_id: str) -> Optional[TradeRecord]:
        with connect(self.db_path) as c:
            row = c.execute("""
                SELECT payload FROM trades
                 WHERE session_id = ?
                 ORDER BY sequence DESC
                 LIMIT 1
            """, (session_id,)).fetchone()
            return TradeRecord.model_validate_json(row["payload"]) if row else None

    def list_for_session(self, session_id: str, limit: int = 500) -> list[TradeRecord]:
        with connect(self.db_path) as c:
            rows = c.execute(
                "SELECT payload FROM trades WHERE session_id = ? ORDER BY sequence ASC LIMIT ?",
                (session_id, limit),
            ).fetchall()
            return [TradeRecord.model_validate_json(r["payload"]) for r in rows]

    def list_from_sequence(self, session_id: str, sequence: int) -> list[TradeRecord]:
        """Intentos con número >= ``sequence``, en orden."""
        with connect(self.db_path) as c:
            rows = c.execute(
                "SELECT payload FROM trades WHERE session_id = ? AND sequence >= ? ORDER BY sequence ASC",
                (session_id, sequence),
            ).fetchall()
            return [TradeRecord.model_validate_json(r["payload"]) for r in rows]

    def list_all(self) -> list[TradeRecord]:
        with connect(self.db_path) as c:
            rows = c.execute("SELECT payload FROM trades ORDER BY id ASC").fetchall()
            return [TradeRecord.model_validate_json(r["payload"]) for r in rows]

    @log_function
    def delete_for_session(self, session_id: str) -> int:
        with connect(self.db_path) as c:
            cur = c.execute("DELETE FROM trades WHERE session_id = ?", (session_id,))
            return int(cur.rowcount or 0)

