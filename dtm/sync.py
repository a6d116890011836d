"""Reconcile watch folders on disk with the projects known to the cache.

A Draw Things project is a ``.sqlite3`` file, usually accompanied by a
``.sqlite3-wal`` journal. Both files count towards the project's identity:
their sizes are summed and the newest modification time wins, so a write
that only touched the journal is still noticed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .enums import MODEL_INFO_FILES, ItemType, ModelType, SyncAction
from .errors import DtmError, SyncError
from .project_store import ProjectStorePool
from .scan import DEFAULT_BATCH_SIZE, ScanProgress, batch_progress, scan_project
from .store import ProjectRecord, ProjectsDb, WatchFolder

logger = logging.getLogger(__name__)

PROJECT_SUFFIX = ".sqlite3"
WAL_SUFFIX = ".sqlite3-wal"


@dataclass(frozen=True)
class FileIdentity:
    filesize: int
    modified: int


@dataclass
class FolderFiles:
    projects: dict[str, FileIdentity] = field(default_factory=dict)
    model_info: dict[str, ModelType] = field(default_factory=dict)


@dataclass
class SyncReport:
    projects_scanned: int = 0
    projects_total: int = 0
    errors: list[SyncError] = field(default_factory=list)

    def merge(self, other: SyncReport) -> None:
        self.projects_scanned += other.projects_scanned
        self.projects_total += other.projects_total
        self.errors.extend(other.errors)


def _project_key(path: Path) -> str | None:
    name = path.name
    if name.endswith(WAL_SUFFIX):
        return str(path.with_name(name[: -len("-wal")]))
    if name.endswith(PROJECT_SUFFIX):
        return str(path)
    return None


def get_folder_files(folder_path: Path | str, recursive: bool = False) -> FolderFiles:
    """Project files and model catalogues found in a folder.

    Project keys are paths relative to ``folder_path`` in posix form. A journal
    without its main database file is ignored.
    """
    root = Path(folder_path).expanduser()
    if not root.is_dir():
        raise FileNotFoundError(f"watch folder not found: {root}")
    entries = root.rglob("*") if recursive else root.iterdir()

    sizes: dict[str, int] = {}
    mtimes: dict[str, int] = {}
    bases: set[str] = set()
    found = FolderFiles()
    for entry in entries:
        if not entry.is_file():
            continue
        if entry.name in MODEL_INFO_FILES:
            found.model_info[entry.relative_to(root).as_posix()] = MODEL_INFO_FILES[entry.name]
            continue
        key = _project_key(entry.relative_to(root))
        if key is None:
            continue
        stat = entry.stat()
        sizes[key] = sizes.get(key, 0) + stat.st_size
        mtimes[key] = max(mtimes.get(key, 0), int(stat.st_mtime))
        if entry.name.endswith(PROJECT_SUFFIX):
            bases.add(key)

    for key in sorted(bases):
        found.projects[Path(key).as_posix()] = FileIdentity(sizes[key], mtimes[key])
    return found


def classify(record: ProjectRecord | None, file: FileIdentity | None) -> SyncAction:
    if record is None:
        return SyncAction.ADD if file is not None else SyncAction.NONE
    if file is None:
        return SyncAction.REMOVE
    if record.filesize != file.filesize or record.modified != file.modified:
        return SyncAction.UPDATE
    return SyncAction.NONE


def _import_model_info(db: ProjectsDb, folder: WatchFolder, files: FolderFiles) -> None:
    for relative, model_type in sorted(files.model_info.items()):
        path = Path(folder.path) / relative
        try:
            db.scan_model_info(path, model_type)
        except (DtmError, OSError, ValueError):
            logger.warning("sync: failed to import model info %s", path, exc_info=True)


def _sync_project(
    db: ProjectsDb,
    pool: ProjectStorePool,
    project: ProjectRecord,
    action: SyncAction,
    file: FileIdentity | None,
    *,
    batch_size: int,
    on_progress: Callable[[int, int], None] | None,
) -> bool:
    full_path = db.project_full_path(project)
    try:
        if file is None:
            pool.evict(full_path)
            if project.missing_on is None:
                db.set_project_missing(project.id, int(time.time()))
            return False
        if project.missing_on is not None:
            db.set_project_missing(project.id, None)
        if action == SyncAction.NONE:
            return False
        scan_project(
            db,
            pool,
            project,
            full_scan=action == SyncAction.ADD,
            on_progress=on_progress,
            batch_size=batch_size,
        )
        db.update_project(project.id, filesize=file.filesize, modified=file.modified)
        return True
    except Exception as exc:
        raise SyncError(str(full_path), exc) from exc


def sync_folder(
    db: ProjectsDb,
    pool: ProjectStorePool,
    folder: WatchFolder,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_progress: Callable[[ScanProgress], None] | None = None,
) -> SyncReport:
    """Bring the cache in line with one watch folder.

    New projects are fully scanned, changed ones scanned from their watermark,
    and vanished ones marked missing with their images kept. Excluded
    projects are left untouched so including them later triggers a rescan.

    ``on_progress`` receives per-batch events while a project is scanned and
    one event carrying ``images_total`` when each project is done.
    """
    files = get_folder_files(folder.path, folder.recursive)
    _import_model_info(db, folder, files)
    report = SyncReport()
    if folder.item_type != ItemType.PROJECTS:
        db.touch_watch_folder(folder.id)
        return report

    known = {p.path: p for p in db.list_projects(folder.id)}
    pending: list[tuple[ProjectRecord, SyncAction, FileIdentity | None]] = []
    for path in sorted(set(known) | set(files.projects)):
        record = known.get(path)
        file = files.projects.get(path)
        action = classify(record, file)
        if record is None:
            if action != SyncAction.ADD:
                continue
            record = db.add_project(folder.id, path)
        if not record.excluded:
            pending.append((record, action, file))

    report.projects_total = len(pending)
    for index, (record, action, file) in enumerate(pending):
        try:
            scanned = _sync_project(
                db,
                pool,
                record,
                action,
                file,
                batch_size=batch_size,
                on_progress=batch_progress(on_progress, record, index, len(pending)),
            )
        except SyncError as exc:
            logger.warning("sync: %s", exc, exc_info=exc.cause)
            report.errors.append(exc)
            continue
        if scanned:
            report.projects_scanned += 1
            logger.info("sync: %s %s", action.name.lower(), record.path)
        if on_progress is not None:
            refreshed = db.get_project(record.id)
            on_progress(
                ScanProgress(
                    project_id=record.id,
                    project_path=record.path,
                    images_total=refreshed.image_count if refreshed else 0,
                    projects_scanned=index + 1,
                    projects_total=len(pending),
                )
            )

    db.touch_watch_folder(folder.id)
    return report


def sync_all(
    db: ProjectsDb,
    pool: ProjectStorePool,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    on_progress: Callable[[ScanProgress], None] | None = None,
) -> SyncReport:
    report = SyncReport()
    for folder in db.list_watch_folders():
        try:
            report.merge(
                sync_folder(db, pool, folder, batch_size=batch_size, on_progress=on_progress)
            )
        except Exception:
            logger.exception("sync: skipped folder %s", folder.path)
    return report
