from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest

from dtm.enums import ItemType, ModelType
from dtm.records import HistoryImport, decode_history
from dtm.store import ListImagesFilter, ListImagesOptions, ModelInfo, ProjectsDb


def _item(history_blob, row_id: int, **fields) -> HistoryImport:
    fields.setdefault("generated", True)
    return HistoryImport.from_node(row_id, decode_history(history_blob(**fields)))


@pytest.fixture
def cache(tmp_path: Path):
    db = ProjectsDb(tmp_path / "cache.sqlite")
    yield db
    db.close()


def _project(cache: ProjectsDb, folder: str = "/data/projects", path: str = "a.sqlite3"):
    watch = cache.add_watch_folder(folder)
    return cache.add_project(watch.id, path)


def test_watch_folders_are_idempotent(cache: ProjectsDb) -> None:
    first = cache.add_watch_folder("/data/projects", recursive=True)
    second = cache.add_watch_folder("/data/projects")

    assert first.id == second.id
    assert second.recursive is True
    assert second.item_type == ItemType.PROJECTS
    assert [f.path for f in cache.list_watch_folders()] == ["/data/projects"]
    updated = cache.update_watch_folder(first.id, recursive=False)
    assert updated is not None and updated.recursive is False


def test_remove_watch_folder_cascades(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    cache.insert_images(project.id, [_item(history_blob, 1, text_prompt="fox")])

    assert cache.remove_watch_folders([project.watchfolder_id]) == 1

    assert cache.list_projects() == []
    assert cache.get_image_count() == 0


def test_project_paths(cache: ProjectsDb) -> None:
    project = _project(cache, path="nested/b.sqlite3")
    again = cache.add_project(project.watchfolder_id, "nested/b.sqlite3")

    assert again.id == project.id
    assert project.last_id == -1
    assert cache.project_full_path(project) == Path("/data/projects/nested/b.sqlite3")
    found = cache.get_project_by_path("/data/projects/nested/b.sqlite3")
    assert found is not None and found.id == project.id
    assert cache.get_project_by_path("/elsewhere/b.sqlite3") is None


def test_update_project_and_missing(cache: ProjectsDb) -> None:
    project = _project(cache)
    cache.set_project_missing(project.id, 1_700_000_000)
    cache.update_project(project.id, filesize=10, modified=20)

    stored = cache.get_project(project.id)
    assert stored is not None
    assert (stored.filesize, stored.modified, stored.fingerprint) == (10, 20, "10:20")
    assert stored.missing_on is None


def test_watermark_never_moves_back(cache: ProjectsDb) -> None:
    project = _project(cache)
    cache.advance_watermark(project.id, 50)
    cache.advance_watermark(project.id, 10)
    stored = cache.get_project(project.id)
    assert stored is not None and stored.last_id == 50


def test_insert_images_ignores_duplicates(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    items = [
        _item(
            history_blob,
            1,
            model="sd15.ckpt",
            loras=[("style.safetensors", 0.6)],
            controls=[("depth.ckpt", 1.0)],
            text_prompt="a fox",
            wall_clock=1_700_000_000,
        ),
        _item(history_blob, 2, model="sd15.ckpt", text_prompt="a wolf"),
    ]

    assert cache.insert_images(project.id, items) == 2
    assert cache.insert_images(project.id, items) == 0
    assert cache.get_image_count() == 2

    result = cache.list_images(ListImagesOptions(sort="id", direction="asc"))
    assert [image.node_id for image in result.images] == [1, 2]
    assert result.images[0].model_file == "sd15.ckpt"
    expected = dt.datetime.fromtimestamp(1_700_000_000, tz=dt.UTC)
    assert result.images[0].wall_clock == expected.isoformat(timespec="microseconds")


def test_list_models_counts_usage(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    cache.update_models(
        [ModelInfo("sd15.ckpt", "SD 1.5", "v1"), ModelInfo("idle.ckpt")], ModelType.MODEL
    )
    cache.insert_images(
        project.id,
        [
            _item(history_blob, 1, model="sd15.ckpt", loras=[("style.safetensors", 1.0)]),
            _item(history_blob, 2, model="sd15.ckpt"),
        ],
    )

    models = cache.list_models()
    assert [(m.filename, m.count) for m in models] == [
        ("sd15.ckpt", 2),
        ("style.safetensors", 1),
    ]
    assert models[0].name == "SD 1.5"
    assert [m.filename for m in cache.list_models(ModelType.LORA)] == ["style.safetensors"]


def test_scan_model_info(cache: ProjectsDb, tmp_path: Path) -> None:
    catalogue = tmp_path / "models.json"
    catalogue.write_text(
        '[{"file": "a.ckpt", "name": "A", "version": "sdxl"}, {"name": "no file"}]'
    )

    assert cache.scan_model_info(catalogue, ModelType.MODEL) == 1

    bad = tmp_path / "custom.json"
    bad.write_text("{")
    with pytest.raises(ValueError):
        cache.scan_model_info(bad, ModelType.MODEL)


def test_list_images_search_filters_and_paging(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    other = _project(cache, folder="/data/other")
    cache.insert_images(
        project.id,
        [
            _item(history_blob, 1, text_prompt="a red fox in snow", steps=20, seed=1),
            _item(history_blob, 2, text_prompt="cyber-punk city", steps=30, seed=2),
            _item(history_blob, 3, text_prompt="a red barn", steps=40, seed=3),
        ],
    )
    cache.insert_images(other.id, [_item(history_blob, 1, text_prompt="red fox", steps=50)])

    by_phrase = cache.list_images(ListImagesOptions(search='"red fox"', sort="id"))
    assert by_phrase.total == 2

    by_terms = cache.list_images(ListImagesOptions(search="barn cyber-punk", sort="seed"))
    assert [image.seed for image in by_terms.images] == [3, 2]

    filtered = cache.list_images(
        ListImagesOptions(
            project_ids=[project.id],
            filters=[ListImagesFilter("steps", "gte", [30])],
            sort="steps",
            direction="asc",
            take=1,
            skip=1,
            count=True,
        )
    )
    assert filtered.total == 2
    assert [image.steps for image in filtered.images] == [40]
    assert filtered.counts is not None
    assert [(c.project_id, c.count) for c in filtered.counts] == [(project.id, 2)]


def test_list_images_rejects_unknown_sort(cache: ProjectsDb) -> None:
    with pytest.raises(ValueError):
        cache.list_images(ListImagesOptions(sort="prompt"))
    with pytest.raises(ValueError):
        cache.list_images(ListImagesOptions(direction="sideways"))


def test_exclude_drops_images_and_identity(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    cache.update_project(project.id, filesize=1, modified=2)
    cache.advance_watermark(project.id, 5)
    cache.insert_images(project.id, [_item(history_blob, 1)])

    excluded = cache.update_exclude(project.id, True)
    assert excluded is not None
    assert excluded.excluded is True
    assert excluded.image_count == 0
    assert (excluded.filesize, excluded.fingerprint, excluded.last_id) == (None, None, -1)

    included = cache.update_exclude(project.id, False)
    assert included is not None and included.excluded is False


def test_rebuild_fts_keeps_search_working(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    cache.insert_images(project.id, [_item(history_blob, 1, text_prompt="lighthouse")])
    cache.rebuild_images_fts()
    assert cache.list_images(ListImagesOptions(search="lighthouse")).total == 1


def test_remove_project_drops_images(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    cache.insert_images(project.id, [_item(history_blob, 1)])

    assert cache.remove_project(project.id) is True
    assert cache.remove_project(project.id) is False
    assert cache.get_project(project.id) is None
    assert cache.get_image_count() == 0
    assert cache.get_watch_folder(project.watchfolder_id) is not None


def test_search_ignores_negative_prompt(cache: ProjectsDb, history_blob) -> None:
    project = _project(cache)
    cache.insert_images(
        project.id, [_item(history_blob, 1, text_prompt="a dog", negative_text_prompt="cat")]
    )

    assert cache.list_images(ListImagesOptions(search="cat")).total == 0
    assert cache.list_images(ListImagesOptions(search='"cat"')).total == 0
    assert cache.list_images(ListImagesOptions(search="dog")).total == 1


def test_old_search_index_is_rebuilt_on_open(tmp_path: Path, history_blob) -> None:
    path = tmp_path / "cache.sqlite"
    cache = ProjectsDb(path)
    project = _project(cache)
    cache.insert_images(
        project.id, [_item(history_blob, 1, text_prompt="a dog", negative_text_prompt="cat")]
    )
    cache.conn.execute("DROP TABLE images_fts")
    cache.conn.execute(
        "CREATE VIRTUAL TABLE images_fts USING fts5("
        "prompt, negative_prompt, content='images', content_rowid='id')"
    )
    cache.conn.execute("INSERT INTO images_fts(images_fts) VALUES('rebuild')")
    cache.close()

    reopened = ProjectsDb(path)
    try:
        columns = [row[1] for row in reopened.conn.execute("PRAGMA table_info(images_fts)")]
        assert columns == ["prompt"]
        assert reopened.list_images(ListImagesOptions(search="cat")).total == 0
        assert reopened.list_images(ListImagesOptions(search="dog")).total == 1
    finally:
        reopened.close()
