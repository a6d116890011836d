from __future__ import annotations

from rich import print

from dtm.enums import ModelType
from dtm.errors import DtmError
from dtm.scan import scan_all_projects, scan_project
from dtm.store import ListImagesOptions

from .common import fail, parse_filter


def projects_list_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        projects = store.list_projects()
        paths = {p.id: store.project_full_path(p) for p in projects}
    finally:
        store.close()
    if not projects:
        print("No projects")
        return
    for project in projects:
        status = []
        if project.excluded:
            status.append("excluded")
        if project.missing_on is not None:
            status.append("missing")
        suffix = f" [yellow]({', '.join(status)})[/yellow]" if status else ""
        print(f"{project.id}: {paths[project.id]} - {project.image_count} images{suffix}")


def projects_scan_cmd(
    *,
    store_from_path,
    pool_from_config,
    db_path: str | None,
    project_id: int | None,
    full_scan: bool,
    batch_size: int,
) -> None:
    store = store_from_path(db_path)
    pool = pool_from_config()
    try:
        if project_id is None:
            results = scan_all_projects(store, pool, full_scan=full_scan, batch_size=batch_size)
        else:
            project = store.get_project(project_id)
            if project is None:
                raise fail(f"Unknown project id: {project_id}")
            results = [
                scan_project(store, pool, project, full_scan=full_scan, batch_size=batch_size)
            ]
    except DtmError as exc:
        raise fail(f"Scan failed: {exc}") from exc
    finally:
        pool.close()
        store.close()
    for result in results:
        if result.skipped:
            print(f"{result.project_id}: skipped (excluded)")
            continue
        print(f"{result.project_id}: +{result.inserted} images ({result.image_count} total)")


def projects_exclude_cmd(
    *, store_from_path, db_path: str | None, project_id: int, excluded: bool
) -> None:
    store = store_from_path(db_path)
    try:
        project = store.update_exclude(project_id, excluded)
    finally:
        store.close()
    if project is None:
        raise fail(f"Unknown project id: {project_id}")
    state = "Excluded" if excluded else "Included"
    print(f"{state} project {project.id} ({project.path})")


def images_list_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project_ids: list[int] | None,
    search: str | None,
    filters: list[str] | None,
    sort: str,
    direction: str,
    take: int,
    skip: int,
) -> None:
    options = ListImagesOptions(
        project_ids=project_ids or None,
        search=search,
        filters=[parse_filter(text) for text in filters or []],
        sort=sort,
        direction=direction,
        take=take,
        skip=skip,
    )
    store = store_from_path(db_path)
    try:
        result = store.list_images(options)
    except ValueError as exc:
        raise fail(str(exc)) from exc
    finally:
        store.close()
    print(f"[bold]{result.total} image(s)[/bold]")
    for image in result.images:
        prompt = image.prompt if len(image.prompt) <= 80 else image.prompt[:77] + "..."
        print(
            f"- #{image.node_id} (project {image.project_id}) "
            f"{image.model_file or '-'} seed={image.seed} steps={image.steps}: {prompt}"
        )


def models_list_cmd(*, store_from_path, db_path: str | None, model_type: str | None) -> None:
    kind = None
    if model_type:
        try:
            kind = ModelType[model_type.upper()]
        except KeyError as exc:
            raise fail(f"Unknown model type: {model_type}") from exc
    store = store_from_path(db_path)
    try:
        models = store.list_models(kind)
    finally:
        store.close()
    if not models:
        print("No models in use")
        return
    for model in models:
        label = model.name or model.filename
        print(f"- {label} [dim]{model.model_type.name.lower()}[/dim]: {model.count}")


def rebuild_fts_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        store.rebuild_images_fts()
        count = store.get_image_count()
    finally:
        store.close()
    print(f"Rebuilt search index for {count} images")
