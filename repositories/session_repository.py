import sqlite3, os, time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from enums.session_state import SessionState, TERMINAL_STATES
from models.session import Session
from utils.logger import log_function


def resolve_db_path(db_path: str | None = None) -> str:
    raw = db_path or os.getenv("DB_PATH")
    if raw:
        path = Path(raw).expanduser().resolve()
    else:
        path = Path(__file__).resolve().parents[1] / "data" / "sessions.db"
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


@contextmanager
def connect(db_path: str):
    """Conexión corta: commit al salir sin error, rollback si falla."""
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


_TERMINAL = tuple(s.value for s in TERMINAL_STATES)


class SessionRepository:
    """
    Una fila por sesión. El estado va en columna propia para poder filtrar;
    el resto del modelo va serializado en JSON.
    Cada upsert es una transacción SQLite: o entra entera o no entra.
    """

    def __init__(self, db_path: str | None = None):
        self.db_path = resolve_db_path(db_path)
        self._create_table()

    def _create_table(self):
        with connect(self.db_path) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions(
                    session_id    TEXT PRIMARY KEY,
                    state         TEXT NOT NULL,
                    payload       TEXT NOT NULL,
                    created_at    INTEGER,
                    updated_at    INTEGER,
                    completed_at  INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state)")

    @log_function
    def upsert(self, session: Session) -> None:
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO sessions (session_id, state, payload, created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    state=excluded.state,
                    payload=excluded.payload,
                    updated_at=excluded.updated_at,
                    completed_at=excluded.completed_at
            """, (
                session.session_id,
                session.state.value,
                session.model_dump_json(),
                session.created_at,
                int(time.time()),
                session.completed_at,
            ))

    @log_function
    def insert_if_absent(self, session: Session) -> bool:
        """Inserta solo si no existe la fila; una sesión ya guardada nunca se pisa. True si se insertó."""
        with connect(self.db_path) as conn:
            cur = conn.execute("""
                INSERT INTO sessions (session_id, state, payload, created_at, updated_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO NOTHING
            """, (
                session.session_id,
                session.state.value,
                session.model_dump_json(),
                session.created_at,
                int(time.time()),
                session.completed_at,
            ))
            return cur.rowcount == 1

    def get(self, session_id: str) -> Optional[Session]:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT payload FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
            return Session.model_validate_json(row["payload"]) if row else None

    def list_all(self, limit: int = 1000) -> list[Session]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT payload FROM sessions ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [Session.model_validate_json(r["payload"]) for r in rows]

    def list_non_terminal(self) -> list[Session]:
        placeholders = ",".join("?" * len(_TERMINAL))
        with connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT payload FROM sessions WHERE state NOT IN ({placeholders}) ORDER BY created_at ASC",
                _TERMINAL,
            ).fetchall()
            return [Session.model_validate_json(r["payload"]) for r in rows]

    def terminal_ids_completed_before(self, cutoff_ts: int) -> list[str]:
        placeholders = ",".join("?" * len(_TERMINAL))
        with connect(self.db_path) as conn:
            rows = conn.execute(
                f"""SELECT session_id FROM sessions
                    WHERE state IN ({placeholders})
                      AND completed_at IS NOT NULL AND completed_at < ?""",
                (*_TERMINAL, cutoff_ts),
            ).fetchall()
            return [r["session_id"] for r in rows]

    @log_function
    def delete(self, session_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))

    def count_by_state(self) -> dict[str, int]:
        with connect(self.db_path) as conn:
            rows = conn.execute("SELECT state, COUNT(*) AS n FROM sessions GROUP BY state").fetchall()
            counts = {s.value: 0 for s in SessionState}
            counts.update({r["state"]: int(r["n"]) for r in rows})
            return counts
