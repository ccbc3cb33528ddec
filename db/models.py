SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id                TEXT PRIMARY KEY,
    owner_id          TEXT,
    expected_segments INTEGER NOT NULL DEFAULT 0,
    finalized         INTEGER NOT NULL DEFAULT 0,
    transcript_id     TEXT,
    created_at        TEXT NOT NULL DEFAULT (datetime('now')),
    finalized_at      TEXT
);

CREATE TABLE IF NOT EXISTS session_chunks (
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    segment_id      TEXT NOT NULL,
    segment_index   INTEGER NOT NULL,
    status          TEXT NOT NULL,
    duration        REAL NOT NULL DEFAULT 0,
    input_file      TEXT,
    output_file     TEXT,
    input_size      INTEGER NOT NULL DEFAULT 0,
    output_size     INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    PRIMARY KEY (session_id, segment_id)
);

CREATE TABLE IF NOT EXISTS queue_entries (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    session_id      TEXT,
    timestamp       TEXT NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    last_attempt    TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    error           TEXT,
    result_json     TEXT,
    metadata_json   TEXT
);

CREATE TABLE IF NOT EXISTS queue_files (
    entry_id        TEXT NOT NULL REFERENCES queue_entries(id) ON DELETE CASCADE,
    role            TEXT NOT NULL,
    position        INTEGER NOT NULL,
    name            TEXT NOT NULL,
    size            INTEGER NOT NULL,
    type            TEXT NOT NULL,
    blob_ref        TEXT NOT NULL,
    PRIMARY KEY (entry_id, role, position)
);
"""
