import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from db.models import SCHEMA_SQL


class Database:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            self._local.conn = sqlite3.connect(str(self.db_path))
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")
        return self._local.conn

    def _init_schema(self):
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def transaction(self):
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._get_conn()
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor

    def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = self._get_conn().execute(sql, params)
        row = cursor.fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = self._get_conn().execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    # -- Sessions --

    def insert_session(self, session_id: str, owner_id: str | None, expected_segments: int) -> dict:
        self.execute(
            "INSERT INTO sessions (id, owner_id, expected_segments) VALUES (?, ?, ?)",
            (session_id, owner_id, expected_segments),
        )
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> dict | None:
        return self.fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))

    def list_sessions(self) -> list[dict]:
        return self.fetchall("SELECT * FROM sessions ORDER BY created_at DESC, rowid DESC")

    def update_session(self, session_id: str, **fields) -> dict | None:
        if not fields:
            return self.get_session(session_id)
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        values = list(fields.values()) + [session_id]
        self.execute(f"UPDATE sessions SET {set_clause} WHERE id = ?", tuple(values))
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> bool:
        cursor = self.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cursor.rowcount > 0

    def upsert_chunk(self, session_id: str, chunk: dict):
        self.execute(
            """
            INSERT INTO session_chunks (session_id, segment_id, segment_index, status, duration,
                                        input_file, output_file, input_size, output_size,
                                        error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (session_id, segment_id) DO UPDATE SET
                segment_index = excluded.segment_index,
                status = excluded.status,
                duration = excluded.duration,
                input_file = excluded.input_file,
                output_file = excluded.output_file,
                input_size = excluded.input_size,
                output_size = excluded.output_size,
                error_message = excluded.error_message
            """,
            (
                session_id, chunk["segment_id"], chunk["segment_index"], chunk["status"],
                chunk.get("duration", 0.0), chunk.get("input_file"), chunk.get("output_file"),
                chunk.get("input_size", 0), chunk.get("output_size", 0), chunk.get("error"),
            ),
        )

    def list_chunks(self, session_id: str) -> list[dict]:
        return self.fetchall(
            "SELECT * FROM session_chunks WHERE session_id = ? ORDER BY segment_index",
            (session_id,),
        )

    # -- Offline queue --

    def insert_queue_entry(self, entry: dict, files: list[dict]):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO queue_entries (id, session_id, timestamp, attempts, status,
                                           metadata_json)
                VALUES (?, ?, ?, 0, 'pending', ?)
                """,
                (entry["id"], entry.get("session_id"), entry["timestamp"],
                 entry.get("metadata_json")),
            )
            conn.executemany(
                """
                INSERT INTO queue_files (entry_id, role, position, name, size, type, blob_ref)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (entry["id"], f["role"], f["position"], f["name"], f["size"], f["type"],
                     f["blob_ref"])
                    for f in files
                ],
            )

    def get_queue_entry(self, entry_id: str) -> dict | None:
        return self.fetchone("SELECT * FROM queue_entries WHERE id = ?", (entry_id,))

    def list_queue_entries(self, statuses: tuple[str, ...] | None = None) -> list[dict]:
        if not statuses:
            return self.fetchall("SELECT * FROM queue_entries ORDER BY seq")
        placeholders = ", ".join("?" for _ in statuses)
        return self.fetchall(
            f"SELECT * FROM queue_entries WHERE status IN ({placeholders}) ORDER BY seq",
            tuple(statuses),
        )

    def list_queue_files(self, entry_id: str) -> list[dict]:
        return self.fetchall(
            "SELECT * FROM queue_files WHERE entry_id = ? ORDER BY role, position",
            (entry_id,),
        )

    def transition_queue_entry(self, entry_id: str, from_statuses: tuple[str, ...],
                               **fields) -> bool:
        """Actualiza la entrada solo si su estado actual esta en `from_statuses`."""
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        placeholders = ", ".join("?" for _ in from_statuses)
        cursor = self.execute(
            f"UPDATE queue_entries SET {set_clause} WHERE id = ? AND status IN ({placeholders})",
            (*fields.values(), entry_id, *from_statuses),
        )
        return cursor.rowcount > 0

    def increment_queue_attempts(self, entry_id: str, last_attempt: str,
                                 from_statuses: tuple[str, ...]) -> bool:
        placeholders = ", ".join("?" for _ in from_statuses)
        cursor = self.execute(
            f"""
            UPDATE queue_entries
            SET status = 'uploading', attempts = attempts + 1, last_attempt = ?, error = NULL
            WHERE id = ? AND status IN ({placeholders})
            """,
            (last_attempt, entry_id, *from_statuses),
        )
        return cursor.rowcount > 0

    def delete_queue_entry(self, entry_id: str) -> bool:
        with self.transaction() as conn:
            conn.execute("DELETE FROM queue_files WHERE entry_id = ?", (entry_id,))
            cursor = conn.execute("DELETE FROM queue_entries WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    def clear_queue(self) -> int:
        with self.transaction() as conn:
            conn.execute("DELETE FROM queue_files")
            cursor = conn.execute("DELETE FROM queue_entries")
        return cursor.rowcount

    def reset_uploading_entries(self) -> int:
        cursor = self.execute(
            "UPDATE queue_entries SET status = 'pending' WHERE status = 'uploading'"
        )
        return cursor.rowcount
