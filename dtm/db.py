from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".dtm" / "projects.sqlite"


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Transactions are opened explicitly, see transaction().
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block inside BEGIN IMMEDIATE, rolling back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def initialize_schema(conn: sqlite3.Connection) -> None:
    stale_fts = _drop_stale_fts(conn)
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS watch_folders (
            id INTEGER PRIMARY KEY,
            path TEXT NOT NULL UNIQUE,
            item_type INTEGER NOT NULL DEFAULT 1,
            recursive INTEGER NOT NULL DEFAULT 0,
            last_updated INTEGER
        );

        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY,
            watchfolder_id INTEGER NOT NULL REFERENCES watch_folders(id) ON DELETE CASCADE,
            path TEXT NOT NULL,
            filesize INTEGER,
            modified INTEGER,
            fingerprint TEXT,
            last_id INTEGER NOT NULL DEFAULT -1,
            excluded INTEGER NOT NULL DEFAULT 0,
            missing_on INTEGER,
            UNIQUE(watchfolder_id, path)
        );

        CREATE TABLE IF NOT EXISTS models (
            id INTEGER PRIMARY KEY,
            filename TEXT NOT NULL,
            model_type INTEGER NOT NULL,
            name TEXT,
            version TEXT,
            UNIQUE(filename, model_type)
        );

        CREATE TABLE IF NOT EXISTS images (
            id INTEGER PRIMARY KEY,
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            node_id INTEGER NOT NULL,
            preview_id INTEGER,
            clip_id INTEGER NOT NULL DEFAULT -1,
            num_frames INTEGER,
            model_id INTEGER REFERENCES models(id) ON DELETE SET NULL,
            refiner_id INTEGER REFERENCES models(id) ON DELETE SET NULL,
            upscaler_id INTEGER REFERENCES models(id) ON DELETE SET NULL,
            upscaler_scale_factor INTEGER,
            refiner_start REAL,
            prompt TEXT NOT NULL DEFAULT '',
            negative_prompt TEXT NOT NULL DEFAULT '',
            seed INTEGER,
            steps INTEGER,
            guidance_scale REAL,
            strength REAL,
            shift REAL,
            sampler INTEGER,
            seed_mode INTEGER,
            start_width INTEGER,
            start_height INTEGER,
            hires_fix INTEGER NOT NULL DEFAULT 0,
            tiled_decoding INTEGER NOT NULL DEFAULT 0,
            tiled_diffusion INTEGER NOT NULL DEFAULT 0,
            tea_cache INTEGER NOT NULL DEFAULT 0,
            cfg_zero_star INTEGER NOT NULL DEFAULT 0,
            has_mask INTEGER NOT NULL DEFAULT 0,
            has_depth INTEGER NOT NULL DEFAULT 0,
            has_pose INTEGER NOT NULL DEFAULT 0,
            has_color INTEGER NOT NULL DEFAULT 0,
            has_custom INTEGER NOT NULL DEFAULT 0,
            has_scribble INTEGER NOT NULL DEFAULT 0,
            has_shuffle INTEGER NOT NULL DEFAULT 0,
            wall_clock TEXT,
            UNIQUE(project_id, node_id)
        );
        CREATE INDEX IF NOT EXISTS idx_images_wall_clock ON images(wall_clock DESC);
        CREATE INDEX IF NOT EXISTS idx_images_model ON images(model_id);

        CREATE TABLE IF NOT EXISTS image_loras (
            image_id INTEGER NOT NULL REFERENCES images(id) ON DELETE CASCADE,
            lora_id INTEGER NOT NULL REFERENCES models(id) ON DELETE CASCADE,
            weight REAL NOT NULL,
            PRIMARY KEY (image_id, lora_id)
        );

        CREATE TABLE IF NOT EXISTS image_controls (
            image_id INTEGER NOT NULL REFERENCES images(id) ON DELETE CASCADE,
            control_id INTEGER NOT NULL REFERENCES models(id) ON DELETE CASCADE,
            weight REAL NOT NULL,
            PRIMARY KEY (image_id, control_id)
        );

        CREATE VIRTUAL TABLE IF NOT EXISTS images_fts USING fts5(
            prompt,
            content='images',
            content_rowid='id',
            tokenize='unicode61'
        );

        DROP TRIGGER IF EXISTS images_ai;
        CREATE TRIGGER images_ai AFTER INSERT ON images BEGIN
            INSERT INTO images_fts(rowid, prompt) VALUES (new.id, new.prompt);
        END;

        DROP TRIGGER IF EXISTS images_au;
        CREATE TRIGGER images_au AFTER UPDATE OF prompt ON images BEGIN
            INSERT INTO images_fts(images_fts, rowid, prompt)
            VALUES('delete', old.id, old.prompt);
            INSERT INTO images_fts(rowid, prompt) VALUES (new.id, new.prompt);
        END;

        DROP TRIGGER IF EXISTS images_ad;
        CREATE TRIGGER images_ad AFTER DELETE ON images BEGIN
            INSERT INTO images_fts(images_fts, rowid, prompt)
            VALUES('delete', old.id, old.prompt);
        END;
        """
    )
    if stale_fts:
        conn.execute("INSERT INTO images_fts(images_fts) VALUES('rebuild')")
    _ensure_column(conn, "projects", "fingerprint", "TEXT")
    _ensure_column(conn, "projects", "missing_on", "INTEGER")
    _ensure_column(conn, "images", "seed_mode", "INTEGER")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_images_project ON images(project_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_image_loras_lora ON image_loras(lora_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_image_controls_control ON image_controls(control_id)"
    )


def _drop_stale_fts(conn: sqlite3.Connection) -> bool:
    # Older caches also indexed negative_prompt.
    columns = {row[1] for row in conn.execute("PRAGMA table_info(images_fts)").fetchall()}
    if "negative_prompt" not in columns:
        return False
    conn.execute("DROP TABLE images_fts")
    return True


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")

