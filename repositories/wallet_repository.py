"""
WalletRepository (SQLite).
Guarda cada WalletRecord emitido: wallet de sesión, wallets efímeras de trade y
las regeneradas de emergencia. Nunca se borran: pueden haber tenido fondos.
"""

from __future__ import annotations
from typing import Optional

from models.wallet_record import WalletKind, WalletRecord
from repositories.session_repository import connect, resolve_db_path
from utils.logger import log_function


class WalletRepository:
    def __init__(self, db_path: str | None = None):
        self.db_path = resolve_db_path(db_path)
        self._ensure_table()

    def _ensure_table(self):
        with connect(self.db_path) as conn:
            conn.execute('''CREATE TABLE IF NOT EXISTS wallets (
                record_key   TEXT PRIMARY KEY,
                address      TEXT NOT NULL,
                session_id   TEXT NOT NULL,
                kind         TEXT NOT NULL,
                sequence     INTEGER,
                side         TEXT,
                payload      TEXT NOT NULL,
                issued_at    INTEGER
            )''')
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wallets_session ON wallets(session_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wallets_address ON wallets(address)")

    @log_function
    def save(self, record: WalletRecord) -> None:
        with connect(self.db_path) as conn:
            conn.execute('''
                INSERT INTO wallets (record_key, address, session_id, kind, sequence, side, payload, issued_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(record_key) DO UPDATE SET
                    address = excluded.address,
                    payload = excluded.payload
            ''', (
                record.record_key,
                record.address,
                record.session_id,
                record.kind.value,
                record.sequence,
                record.side.value if record.side else None,
                record.model_dump_json(),
                record.issued_at,
            ))

    @log_function
    def insert_if_absent(self, record: WalletRecord) -> bool:
        with connect(self.db_path) as conn:
            cur = conn.execute('''
                INSERT INTO wallets (record_key, address, session_id, kind, sequence, side, payload, issued_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(record_key) DO NOTHING
            ''', (
                record.record_key,
                record.address,
                record.session_id,
                record.kind.value,
                record.sequence,
                record.side.value if record.side else None,
                record.model_dump_json(),
                record.issued_at,
            ))
            return cur.rowcount == 1

    def get_session_wallet(self, session_id: str) -> Optional[WalletRecord]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM wallets WHERE record_key = ? AND kind = ?",
                (session_id, WalletKind.SESSION.value),
            ).fetchone()
            return WalletRecord.model_validate_json(row["payload"]) if row else None

    def get_by_address(self, address: str) -> Optional[WalletRecord]:
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM wallets WHERE lower(address) = lower(?) ORDER BY issued_at ASC LIMIT 1",
                (address,),
            ).fetchone()
            return WalletRecord.model_validate_json(row["payload"]) if row else None

    def list_for_session(self, session_id: str) -> list[WalletRecord]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT payload FROM wallets WHERE session_id = ? ORDER BY issued_at ASC, sequence ASC",
                (session_id,),
            ).fetchall()
            return [WalletRecord.model_validate_json(r["payload"]) for r in rows]

    def list_all(self) -> list[WalletRecord]:
        with connect(self.db_path) as conn:
            rows = conn.execute("SELECT payload FROM wallets ORDER BY issued_at ASC").fetchall()
            return [WalletRecord.model_validate_json(r["payload"]) for r in rows]
