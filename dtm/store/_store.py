from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from .. import db
from ..enums import ItemType, ModelType
from ..errors import CacheError
from ..records.tensor_history import HistoryImport
from . import images as store_images
from . import models as store_models
from . import search as store_search
from .types import (
    ListImagesOptions,
    ListImagesResult,
    ModelInfo,
    ModelRecord,
    ProjectRecord,
    WatchFolder,
)

logger = logging.getLogger(__name__)

_PROJECT_SELECT = """
    SELECT p.*, (SELECT COUNT(*) FROM images i WHERE i.project_id = p.id) AS image_count
    FROM projects p
"""


class ProjectsDb:
    """Local cache of watch folders, projects, models and imported images."""

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = False,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        self._lock = threading.RLock()
        db.initialize_schema(self.conn)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with db.transaction(self.conn) as conn:
                    yield conn
            except sqlite3.Error as exc:
                raise CacheError(str(exc)) from exc

    def _read(self, sql: str, params: Sequence[object] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise CacheError(str(exc)) from exc

    # Watch folders

    def add_watch_folder(
        self, path: str, item_type: ItemType = ItemType.PROJECTS, recursive: bool = False
    ) -> WatchFolder:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO watch_folders(path, item_type, recursive) VALUES (?, ?, ?)
                ON CONFLICT(path) DO NOTHING
                """,
                (path, int(item_type), int(recursive)),
            )
            row = conn.execute("SELECT * FROM watch_folders WHERE path = ?", (path,)).fetchone()
        return WatchFolder.from_row(row)

    def list_watch_folders(self, item_type: ItemType | None = None) -> list[WatchFolder]:
        if item_type is None:
            rows = self._read("SELECT * FROM watch_folders ORDER BY path")
        else:
            rows = self._read(
                "SELECT * FROM watch_folders WHERE item_type = ? ORDER BY path", (int(item_type),)
            )
        return [WatchFolder.from_row(row) for row in rows]

    def get_watch_folder(self, folder_id: int) -> WatchFolder | None:
        rows = self._read("SELECT * FROM watch_folders WHERE id = ?", (folder_id,))
        return WatchFolder.from_row(rows[0]) if rows else None

    def update_watch_folder(self, folder_id: int, *, recursive: bool) -> WatchFolder | None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE watch_folders SET recursive = ? WHERE id = ?", (int(recursive), folder_id)
            )
        return self.get_watch_folder(folder_id)

    def touch_watch_folder(self, folder_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE watch_folders SET last_updated = ? WHERE id = ?",
                (int(time.time()), folder_id),
            )

    def remove_watch_folders(self, folder_ids: Iterable[int]) -> int:
        """Remove folders; their projects and images cascade away."""
        removed = 0
        with self.transaction() as conn:
            for folder_id in folder_ids:
                cur = conn.execute("DELETE FROM watch_folders WHERE id = ?", (folder_id,))
                removed += cur.rowcount
        return removed

    # Projects

    def add_project(self, watchfolder_id: int, path: str) -> ProjectRecord:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO projects(watchfolder_id, path) VALUES (?, ?)
                ON CONFLICT(watchfolder_id, path) DO NOTHING
                """,
                (watchfolder_id, path),
            )
            row = conn.execute(
                _PROJECT_SELECT + " WHERE p.watchfolder_id = ? AND p.path = ?",
                (watchfolder_id, path),
            ).fetchone()
        return ProjectRecord.from_row(row)

    def get_project(self, project_id: int) -> ProjectRecord | None:
        rows = self._read(_PROJECT_SELECT + " WHERE p.id = ?", (project_id,))
        return ProjectRecord.from_row(rows[0]) if rows else None

    def get_project_by_path(self, full_path: str) -> ProjectRecord | None:
        """Look a project up by its absolute path (watch folder path joined with its own)."""
        target = Path(full_path)
        for folder in self.list_watch_folders(ItemType.PROJECTS):
            try:
                relative = target.relative_to(folder.path)
            except ValueError:
                continue
            rows = self._read(
                _PROJECT_SELECT + " WHERE p.watchfolder_id = ? AND p.path = ?",
                (folder.id, relative.as_posix()),
            )
            if rows:
                return ProjectRecord.from_row(rows[0])
        return None

    def list_projects(self, watchfolder_id: int | None = None) -> list[ProjectRecord]:
        if watchfolder_id is None:
            rows = self._read(_PROJECT_SELECT + " ORDER BY p.path")
        else:
            rows = self._read(
                _PROJECT_SELECT + " WHERE p.watchfolder_id = ? ORDER BY p.path", (watchfolder_id,)
            )
        return [ProjectRecord.from_row(row) for row in rows]

    def project_full_path(self, project: ProjectRecord | int) -> Path:
        project_id = project if isinstance(project, int) else project.id
        rows = self._read(
            """
            SELECT w.path AS folder, p.path AS path
            FROM projects p JOIN watch_folders w ON w.id = p.watchfolder_id
            WHERE p.id = ?
            """,
            (project_id,),
        )
        if not rows:
            raise CacheError(f"unknown project id: {project_id}")
        return Path(rows[0]["folder"]) / rows[0]["path"]

    def update_project(self, project_id: int, *, filesize: int, modified: int) -> None:
        """Record the file identity seen by the last sync and clear ``missing_on``."""
        fingerprint = f"{filesize}:{modified}"
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE projects
                SET filesize = ?, modified = ?, fingerprint = ?, missing_on = NULL
                WHERE id = ?
                """,
                (filesize, modified, fingerprint, project_id),
            )

    def set_project_missing(self, project_id: int, missing_on: int | None) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE projects SET missing_on = ? WHERE id = ?", (missing_on, project_id)
            )

    def advance_watermark(self, project_id: int, last_id: int) -> None:
        """Move the scan watermark forward; it never goes backwards."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE projects SET last_id = MAX(last_id, ?) WHERE id = ?",
                (last_id, project_id),
            )

    def update_exclude(self, project_id: int, excluded: bool) -> ProjectRecord | None:
        with self.transaction() as conn:
            if excluded:
                # Dropping the file identity makes a later include rescan from scratch.
                conn.execute("DELETE FROM images WHERE project_id = ?", (project_id,))
                conn.execute(
                    """
                    UPDATE projects
                    SET excluded = 1, filesize = NULL, modified = NULL,
                        fingerprint = NULL, last_id = -1
                    WHERE id = ?
                    """,
                    (project_id,),
                )
            else:
                conn.execute("UPDATE projects SET excluded = 0 WHERE id = ?", (project_id,))
        logger.info("project %s excluded=%s", project_id, excluded)
        return self.get_project(project_id)

    def remove_project(self, project_id: int) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return cur.rowcount > 0

    # Models and images

    def resolve_models(
        self, keys: Iterable[tuple[str, ModelType]]
    ) -> dict[tuple[str, ModelType], int]:
        with self.transaction() as conn:
            return store_models.resolve_models(conn, keys)

    def update_models(self, infos: Iterable[ModelInfo], model_type: ModelType) -> int:
        with self.transaction() as conn:
            return store_models.update_models(conn, infos, model_type)

    def scan_model_info(self, path: Path | str, model_type: ModelType) -> int:
        infos = store_models.read_model_info(path)
        count = self.update_models(infos, model_type)
        logger.info("imported %d %s entries from %s", count, model_type.name.lower(), path)
        return count

    def list_models(self, model_type: ModelType | None = None) -> list[ModelRecord]:
        with self._lock:
            return store_models.list_models(self.conn, model_type)

    def insert_images(self, project_id: int, items: Sequence[HistoryImport]) -> int:
        """Insert a batch and its model links in one transaction."""
        keys = [key for item in items for key in store_images.model_keys(item)]
        with self.transaction() as conn:
            models = store_models.resolve_models(conn, keys)
            return store_images.insert_images(conn, project_id, items, models)

    def list_images(self, options: ListImagesOptions | None = None) -> ListImagesResult:
        with self._lock:
            try:
                return store_images.list_images(self.conn, options or ListImagesOptions())
            except sqlite3.Error as exc:
                raise CacheError(str(exc)) from exc

    def get_image_count(self) -> int:
        with self._lock:
            return store_images.get_image_count(self.conn)

    def rebuild_images_fts(self) -> None:
        with self.transaction() as conn:
            store_search.rebuild_fts(conn)
