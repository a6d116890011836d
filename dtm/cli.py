from __future__ import annotations

import json
from dataclasses import asdict

import typer
from rich import print

from . import __version__
from .commands.common import (
    configure_logging,
    pool_from_config,
    read_config_or_exit,
    store_from_path,
)
from .commands.config_cmds import config_set_cmd
from .commands.folder_cmds import (
    init_db_cmd,
    sync_cmd,
    watch_add_cmd,
    watch_list_cmd,
    watch_remove_cmd,
)
from .commands.history_cmds import (
    history_predecessors_cmd,
    history_show_cmd,
    tensor_cmd,
    text_cmd,
)
from .commands.project_cmds import (
    images_list_cmd,
    models_list_cmd,
    projects_exclude_cmd,
    projects_list_cmd,
    projects_scan_cmd,
    rebuild_fts_cmd,
)
from .config import get_config_path, load_config

app = typer.Typer(help="dtm: browse and import Draw Things project history")
watch_app = typer.Typer(help="Manage watch folders")
projects_app = typer.Typer(help="Inspect and scan projects")
images_app = typer.Typer(help="Query imported images")
models_app = typer.Typer(help="Models referenced by imported images")
history_app = typer.Typer(help="Read history rows straight from a project file")
config_app = typer.Typer(help="Configuration")
app.add_typer(watch_app, name="watch")
app.add_typer(projects_app, name="projects")
app.add_typer(images_app, name="images")
app.add_typer(models_app, name="models")
app.add_typer(history_app, name="history")
app.add_typer(config_app, name="config")

PROJECT_HELP = "Project id in the cache, or a path to a .sqlite3 project file"


@app.callback()
def main(
    log_level: str = typer.Option(None, help="Logging level (defaults to config log_level)"),
) -> None:
    configure_logging(log_level)


@app.command("init-db")
def init_db(db_path: str = typer.Option(None, help="Path to cache database")) -> None:
    """Create the cache database (no-op if it already exists)."""
    init_db_cmd(store_from_path=store_from_path, db_path=db_path)


@watch_app.command("add")
def watch_add(
    path: str,
    recursive: bool = typer.Option(False, help="Include subfolders"),
    model_info: bool = typer.Option(False, help="Folder holds model catalogue files"),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """Start watching a folder of projects."""
    watch_add_cmd(
        store_from_path=store_from_path,
        db_path=db_path,
        path=path,
        recursive=recursive,
        model_info=model_info,
    )


@watch_app.command("list")
def watch_list(db_path: str = typer.Option(None, help="Path to cache database")) -> None:
    """List watch folders."""
    watch_list_cmd(store_from_path=store_from_path, db_path=db_path)


@watch_app.command("remove")
def watch_remove(
    folder_ids: list[int],
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """Stop watching folders; their cached projects are removed."""
    watch_remove_cmd(store_from_path=store_from_path, db_path=db_path, folder_ids=folder_ids)


@app.command()
def sync(
    db_path: str = typer.Option(None, help="Path to cache database"),
    batch_size: int = typer.Option(None, help="History rows per batch"),
) -> None:
    """Sync every watch folder and import new history."""
    sync_cmd(
        store_from_path=store_from_path,
        pool_from_config=pool_from_config,
        db_path=db_path,
        batch_size=batch_size,
    )


@projects_app.command("list")
def projects_list(db_path: str = typer.Option(None, help="Path to cache database")) -> None:
    """List known projects."""
    projects_list_cmd(store_from_path=store_from_path, db_path=db_path)


@projects_app.command("scan")
def projects_scan(
    project_id: int = typer.Argument(None, help="Project id (all projects when omitted)"),
    full: bool = typer.Option(False, "--full", help="Rescan from the first row"),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """Import new history rows of one or all projects."""
    projects_scan_cmd(
        store_from_path=store_from_path,
        pool_from_config=pool_from_config,
        db_path=db_path,
        project_id=project_id,
        full_scan=full,
        batch_size=load_config().scan_batch_size,
    )


@projects_app.command("exclude")
def projects_exclude(
    project_id: int, db_path: str = typer.Option(None, help="Path to cache database")
) -> None:
    """Exclude a project and drop its cached images."""
    projects_exclude_cmd(
        store_from_path=store_from_path, db_path=db_path, project_id=project_id, excluded=True
    )


@projects_app.command("include")
def projects_include(
    project_id: int, db_path: str = typer.Option(None, help="Path to cache database")
) -> None:
    """Include a previously excluded project; the next sync rescans it."""
    projects_exclude_cmd(
        store_from_path=store_from_path, db_path=db_path, project_id=project_id, excluded=False
    )


@images_app.command("list")
def images_list(
    project_id: list[int] = typer.Option(None, help="Repeat for multiple projects"),
    search: str = typer.Option(None, help='Prompt search; "quoted" phrases must match'),
    filter_: list[str] = typer.Option(
        None, "--filter", help="target:operator:values, e.g. steps:gte:20"
    ),
    sort: str = typer.Option("wall_clock", help="wall_clock, seed, steps or id"),
    direction: str = typer.Option("desc", help="asc or desc"),
    take: int = typer.Option(50, help="Max results"),
    skip: int = typer.Option(0, help="Results to skip"),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """List imported images."""
    images_list_cmd(
        store_from_path=store_from_path,
        db_path=db_path,
        project_ids=project_id,
        search=search,
        filters=filter_,
        sort=sort,
        direction=direction,
        take=take,
        skip=skip,
    )


@models_app.command("list")
def models_list(
    model_type: str = typer.Option(None, "--type", help="model, lora, cnet or upscaler"),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """List models used by imported images, most used first."""
    models_list_cmd(store_from_path=store_from_path, db_path=db_path, model_type=model_type)


@history_app.command("show")
def history_show(
    project: str = typer.Argument(..., help=PROJECT_HELP),
    row_id: int = typer.Argument(...),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """Print a history row as JSON."""
    history_show_cmd(
        store_from_path=store_from_path, db_path=db_path, project=project, row_id=row_id
    )


@history_app.command("predecessors")
def history_predecessors(
    project: str = typer.Argument(..., help=PROJECT_HELP),
    row_id: int = typer.Argument(...),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """List the rows a history row may have been generated from."""
    history_predecessors_cmd(
        store_from_path=store_from_path, db_path=db_path, project=project, row_id=row_id
    )


@app.command()
def text(
    project: str = typer.Argument(..., help=PROJECT_HELP),
    lineage: int = typer.Argument(..., help="Text lineage"),
    edits: int = typer.Argument(..., help="Number of edits"),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """Reconstruct the prompts at an edit count."""
    text_cmd(
        store_from_path=store_from_path,
        db_path=db_path,
        project=project,
        lineage=lineage,
        edits=edits,
    )


@app.command()
def tensor(
    project: str = typer.Argument(..., help=PROJECT_HELP),
    name: str = typer.Argument(..., help="Tensor name, e.g. tensor_history_1"),
    output: str = typer.Option(..., "--output", "-o", help="File to write"),
    row_id: int = typer.Option(None, help="Embed this row's parameters in the PNG"),
    scale: int = typer.Option(None, help="Center crop and sample to a square of this size"),
    raw: bool = typer.Option(False, help="Write raw pixel bytes instead of PNG"),
    invert: bool = typer.Option(False, help="Invert masks"),
    db_path: str = typer.Option(None, help="Path to cache database"),
) -> None:
    """Decode a stored tensor to a file."""
    tensor_cmd(
        store_from_path=store_from_path,
        db_path=db_path,
        project=project,
        name=name,
        output=output,
        row_id=row_id,
        scale=scale,
        raw=raw,
        invert=invert,
    )


@app.command("rebuild-fts")
def rebuild_fts(db_path: str = typer.Option(None, help="Path to cache database")) -> None:
    """Rebuild the prompt search index."""
    rebuild_fts_cmd(store_from_path=store_from_path, db_path=db_path)


@config_app.command("show")
def config_show() -> None:
    """Print the effective configuration."""
    read_config_or_exit()
    print(f"[dim]{get_config_path()}[/dim]")
    print(json.dumps(asdict(load_config()), indent=2))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting name, e.g. scan_batch_size"),
    value: str = typer.Argument(None, help="New value; omit to remove the setting"),
) -> None:
    """Write one setting to the config file."""
    config_set_cmd(key=key, value=value)


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)
