from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path

from .config import DtmConfig, load_config
from .enums import ItemType, ModelType
from .errors import CacheError
from .history import HistoryExtra
from .project_store import ProjectStore, ProjectStorePool
from .records.tensor_history import HistoryImport
from .scan import ScanProgress, ScanResult, scan_all_projects, scan_project
from .store import (
    ListImagesOptions,
    ListImagesResult,
    ModelRecord,
    ProjectRecord,
    ProjectsDb,
    WatchFolder,
)
from .sync import SyncReport, sync_all
from .tensors import decode_mask, decode_tensor
from .text_edits import PromptPair


class ProjectsService:
    """Async entry points over the cache and the project store pool.

    Every method runs its blocking work in a worker thread, so it can be
    awaited from an event loop serving a UI.
    """

    def __init__(self, db: ProjectsDb, pool: ProjectStorePool, *, batch_size: int = 250):
        self.db = db
        self.pool = pool
        self.batch_size = batch_size

    @classmethod
    def from_config(cls, cfg: DtmConfig | None = None) -> ProjectsService:
        cfg = cfg or load_config()
        return cls(
            ProjectsDb(cfg.db_path),
            ProjectStorePool(cfg.pool_capacity, float(cfg.pool_idle_seconds)),
            batch_size=cfg.scan_batch_size,
        )

    def close(self) -> None:
        self.pool.close()
        self.db.close()

    def _project(self, project_id: int) -> ProjectRecord:
        project = self.db.get_project(project_id)
        if project is None:
            raise CacheError(f"unknown project id: {project_id}")
        return project

    def _store(self, project_id: int) -> ProjectStore:
        return self.pool.get(self.db.project_full_path(project_id))

    # Watch folders and projects

    async def add_watch_folder(
        self, path: str, item_type: ItemType = ItemType.PROJECTS, recursive: bool = False
    ) -> WatchFolder:
        return await asyncio.to_thread(self.db.add_watch_folder, path, item_type, recursive)

    async def list_watch_folders(self) -> list[WatchFolder]:
        return await asyncio.to_thread(self.db.list_watch_folders)

    async def remove_watch_folders(self, folder_ids: Iterable[int]) -> int:
        return await asyncio.to_thread(self.db.remove_watch_folders, list(folder_ids))

    async def list_projects(self, watchfolder_id: int | None = None) -> list[ProjectRecord]:
        return await asyncio.to_thread(self.db.list_projects, watchfolder_id)

    async def update_exclude(self, project_id: int, excluded: bool) -> ProjectRecord | None:
        def run() -> ProjectRecord | None:
            if excluded:
                self.pool.evict(self.db.project_full_path(project_id))
            return self.db.update_exclude(project_id, excluded)

        return await asyncio.to_thread(run)

    # Scanning

    async def sync(
        self, on_progress: Callable[[ScanProgress], None] | None = None
    ) -> SyncReport:
        return await asyncio.to_thread(
            sync_all, self.db, self.pool, batch_size=self.batch_size, on_progress=on_progress
        )

    async def scan_project(
        self,
        project_id: int,
        *,
        full_scan: bool = False,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> ScanResult:
        def run() -> ScanResult:
            return scan_project(
                self.db,
                self.pool,
                self._project(project_id),
                full_scan=full_scan,
                on_progress=on_progress,
                batch_size=self.batch_size,
            )

        return await asyncio.to_thread(run)

    async def scan_all(
        self,
        *,
        full_scan: bool = False,
        on_progress: Callable[[ScanProgress], None] | None = None,
    ) -> list[ScanResult]:
        return await asyncio.to_thread(
            scan_all_projects,
            self.db,
            self.pool,
            full_scan=full_scan,
            on_progress=on_progress,
            batch_size=self.batch_size,
        )

    # Cache queries

    async def list_images(self, options: ListImagesOptions | None = None) -> ListImagesResult:
        return await asyncio.to_thread(self.db.list_images, options)

    async def list_models(self, model_type: ModelType | None = None) -> list[ModelRecord]:
        return await asyncio.to_thread(self.db.list_models, model_type)

    # Project store reads

    async def get_history_full(self, project_id: int, row_id: int) -> HistoryExtra:
        return await asyncio.to_thread(
            lambda: self._store(project_id).get_history_full(row_id)
        )

    async def find_predecessors(self, project_id: int, row_id: int) -> list[HistoryExtra]:
        def run() -> list[HistoryExtra]:
            store = self._store(project_id)
            target = store.get_history_full(row_id)
            return store.find_predecessor_candidates(
                target.row_id, target.lineage, target.logical_time
            )

        return await asyncio.to_thread(run)

    async def get_clip(self, project_id: int, row_id: int) -> list[HistoryImport]:
        return await asyncio.to_thread(
            lambda: self._store(project_id).get_histories_from_clip(row_id)
        )

    async def get_prompts(self, project_id: int, lineage: int, edits: int) -> PromptPair | None:
        return await asyncio.to_thread(
            lambda: self._store(project_id).text_history.get_edit(lineage, edits)
        )

    async def decode_tensor(
        self,
        project_id: int,
        name: str,
        *,
        as_png: bool = False,
        row_id: int | None = None,
        scale: int | None = None,
        invert: bool = False,
    ) -> bytes:
        """Decode a stored tensor; ``row_id`` embeds that row's parameters in the PNG."""

        def run() -> bytes:
            store = self._store(project_id)
            tensor = store.get_tensor_raw(name)
            if name.startswith(("binary_mask_", "scribble_")):
                return decode_mask(tensor, scale=scale, invert=invert)
            node = store.get_history_full(row_id).node if row_id is not None else None
            return decode_tensor(tensor, as_png=as_png, node=node, scale=scale)

        return await asyncio.to_thread(run)

    async def get_thumb(self, project_id: int, thumb_id: int, *, half: bool = False) -> bytes:
        def run() -> bytes:
            store = self._store(project_id)
            return store.get_thumb_half(thumb_id) if half else store.get_thumb(thumb_id)

        return await asyncio.to_thread(run)

    async def get_project_path(self, project_id: int) -> Path:
        return await asyncio.to_thread(self.db.project_full_path, project_id)
