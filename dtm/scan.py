from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .enums import Sampler, SeedMode
from .errors import UnknownVariantError
from .project_store import ProjectStorePool
from .records.tensor_history import HistoryImport
from .store import ProjectRecord, ProjectsDb

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 250


@dataclass(frozen=True)
class ScanProgress:
    """Progress of a multi-project scan.

    ``items_scanned``/``items_total`` count history rows of the current
    project; ``images_total`` is set once that project finishes.
    """

    project_id: int
    project_path: str
    items_scanned: int = 0
    items_total: int = 0
    images_total: int | None = None
    projects_scanned: int = 0
    projects_total: int = 0


@dataclass(frozen=True)
class ScanResult:
    project_id: int
    inserted: int
    image_count: int
    last_id: int
    skipped: bool = False


def batch_progress(
    on_progress: Callable[[ScanProgress], None] | None,
    project: ProjectRecord,
    index: int,
    projects_total: int,
) -> Callable[[int, int], None] | None:
    """Adapt per-batch ``(scanned, total)`` callbacks into ``ScanProgress`` events."""
    if on_progress is None:
        return None

    def report(scanned: int, total: int) -> None:
        on_progress(
            ScanProgress(
                project_id=project.id,
                project_path=project.path,
                items_scanned=scanned,
                items_total=total,
                projects_scanned=index,
                projects_total=projects_total,
            )
        )

    return report


def _importable(item: HistoryImport, full_scan: bool) -> bool:
    if not full_scan and not (item.index_in_a_clip == 0 and item.generated):
        return False
    try:
        Sampler.from_value(item.sampler)
        SeedMode.from_value(item.seed_mode)
    except UnknownVariantError as exc:
        logger.warning("scan: skipped row %s: %s", item.row_id, exc)
        return False
    return True


def scan_project(
    db: ProjectsDb,
    pool: ProjectStorePool,
    project: ProjectRecord,
    *,
    full_scan: bool = False,
    on_progress: Callable[[int, int], None] | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ScanResult:
    """Import new history rows of one project into the cache.

    Rows after the project's watermark are read in batches of ``batch_size``;
    each batch is written in its own transaction. The watermark only moves
    once every batch has been written, so a failed scan is retried from the
    same point and already inserted rows are ignored.
    """
    if project.excluded:
        logger.debug("scan: project %s is excluded", project.path)
        return ScanResult(project.id, 0, project.image_count, project.last_id, skipped=True)
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    path = db.project_full_path(project)
    store = pool.get(path)
    last_id = store.get_info().history_max_id
    first_id = 0 if full_scan else project.last_id + 1
    total = max(last_id - first_id + 1, 0)
    scanned = 0
    inserted = 0

    while first_id <= last_id:
        count = min(batch_size, last_id - first_id + 1)
        batch = [
            item for item in store.get_histories(first_id, count) if _importable(item, full_scan)
        ]
        if batch:
            inserted += db.insert_images(project.id, batch)
        first_id += count
        scanned += count
        if on_progress is not None:
            on_progress(scanned, total)

    if total:
        db.advance_watermark(project.id, last_id)
    refreshed = db.get_project(project.id)
    image_count = refreshed.image_count if refreshed else 0
    logger.info("scan: %s inserted=%d images=%d", path, inserted, image_count)
    return ScanResult(project.id, inserted, image_count, max(last_id, project.last_id))


def scan_all_projects(
    db: ProjectsDb,
    pool: ProjectStorePool,
    *,
    full_scan: bool = False,
    on_progress: Callable[[ScanProgress], None] | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[ScanResult]:
    """Scan every project that is neither excluded nor missing."""
    projects = [p for p in db.list_projects() if not p.excluded and p.missing_on is None]
    results: list[ScanResult] = []
    for index, project in enumerate(projects):
        try:
            result = scan_project(
                db,
                pool,
                project,
                full_scan=full_scan,
                on_progress=batch_progress(on_progress, project, index, len(projects)),
                batch_size=batch_size,
            )
        except Exception:
            logger.exception("scan: failed to scan %s", project.path)
            continue
        results.append(result)
        if on_progress is not None:
            on_progress(
                ScanProgress(
                    project_id=project.id,
                    project_path=project.path,
                    images_total=result.image_count,
                    projects_scanned=index + 1,
                    projects_total=len(projects),
                )
            )
    return results
