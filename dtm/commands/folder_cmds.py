from __future__ import annotations

from pathlib import Path

from rich import print

from dtm.config import load_config
from dtm.enums import ItemType
from dtm.errors import DtmError
from dtm.project_store import ProjectStorePool
from dtm.sync import sync_all

from .common import fail


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the cache database (no-op if it already exists)."""

    store = store_from_path(db_path)
    try:
        print(f"Initialized database at {store.db_path}")
    finally:
        store.close()


def watch_add_cmd(
    *, store_from_path, db_path: str | None, path: str, recursive: bool, model_info: bool
) -> None:
    folder_path = Path(path).expanduser().resolve()
    if not folder_path.is_dir():
        raise fail(f"Not a directory: {folder_path}")
    item_type = ItemType.MODEL_INFO if model_info else ItemType.PROJECTS
    store = store_from_path(db_path)
    try:
        folder = store.add_watch_folder(str(folder_path), item_type, recursive)
    finally:
        store.close()
    print(f"Watching {folder.path} (id {folder.id})")


def watch_list_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        folders = store.list_watch_folders()
    finally:
        store.close()
    if not folders:
        print("No watch folders")
        return
    for folder in folders:
        flags = [folder.item_type.name.lower()]
        if folder.recursive:
            flags.append("recursive")
        print(f"{folder.id}: {folder.path} [dim]({', '.join(flags)})[/dim]")


def watch_remove_cmd(*, store_from_path, db_path: str | None, folder_ids: list[int]) -> None:
    store = store_from_path(db_path)
    try:
        removed = store.remove_watch_folders(folder_ids)
    finally:
        store.close()
    print(f"Removed {removed} watch folder(s)")


def sync_cmd(
    *, store_from_path, pool_from_config, db_path: str | None, batch_size: int | None
) -> None:
    """Scan every watch folder and import new history into the cache."""

    store = store_from_path(db_path)
    pool: ProjectStorePool = pool_from_config()
    try:
        report = sync_all(store, pool, batch_size=batch_size or load_config().scan_batch_size)
    except DtmError as exc:
        raise fail(f"Sync failed: {exc}") from exc
    finally:
        pool.close()
        store.close()
    print(f"Synced {report.projects_scanned} of {report.projects_total} project(s)")
    for error in report.errors:
        print(f"[yellow]- {error}[/yellow]")
