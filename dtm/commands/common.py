from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import typer
from rich import print

from dtm.config import DtmConfig, load_config, read_config_file, write_config_file
from dtm.errors import DtmError
from dtm.project_store import ProjectStore, ProjectStorePool
from dtm.store import ListImagesFilter, ProjectsDb


def store_from_path(db_path: str | None) -> ProjectsDb:
    return ProjectsDb(db_path or load_config().db_path)


def pool_from_config(cfg: DtmConfig | None = None) -> ProjectStorePool:
    cfg = cfg or load_config()
    return ProjectStorePool(cfg.pool_capacity, float(cfg.pool_idle_seconds))


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any]) -> Path:
    try:
        return write_config_file(data)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def configure_logging(level: str | None) -> None:
    name = (level or load_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def fail(message: str) -> typer.Exit:
    print(f"[red]{message}[/red]")
    return typer.Exit(code=1)


def open_project(*, store_from_path, db_path: str | None, project: str) -> ProjectStore:
    """Open a project given either its cache id or a path to its file."""
    if project.isdigit():
        store = store_from_path(db_path)
        try:
            path = store.project_full_path(int(project))
        except DtmError as exc:
            raise fail(str(exc)) from exc
        finally:
            store.close()
    else:
        path = Path(project).expanduser()
        if not path.is_file():
            raise fail(f"Project file not found: {path}")
    try:
        return ProjectStore(path)
    except DtmError as exc:
        raise fail(str(exc)) from exc


def parse_filter(text: str) -> ListImagesFilter:
    """Parse ``target:operator:value[,value...]`` into a filter."""
    parts = text.split(":", 2)
    if len(parts) != 3:
        raise fail(f"Invalid filter {text!r}, expected target:operator:values")
    target, operator, values = parts
    try:
        return ListImagesFilter(target, operator, [v for v in values.split(",") if v])
    except ValueError as exc:
        raise fail(f"Invalid filter {text!r}: {exc}") from exc
