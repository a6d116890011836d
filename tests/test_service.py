from __future__ import annotations

import asyncio
import io
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from dtm.config import DtmConfig
from dtm.errors import CacheError
from dtm.service import ProjectsService
from dtm.store import ListImagesOptions


@pytest.fixture
def service(tmp_path: Path):
    svc = ProjectsService.from_config(DtmConfig(db_path=str(tmp_path / "cache.sqlite")))
    yield svc
    svc.close()


def test_sync_then_query(service: ProjectsService, project_file, image_tensor) -> None:
    project = project_file()
    project.add_text(2, 0, 0, "a red fox", "blurry")
    row = project.add_history(0, 0, generated=True, seed=9, text_lineage=2)
    project.add_tensordata(0, 0, f20=1)
    dim, data = image_tensor(np.zeros((2, 2, 3), dtype=np.float32))
    project.add_tensor("tensor_history_1", dim, data)
    project.add_thumb(1, b"thumb")

    async def run():
        folder = await service.add_watch_folder(str(project.path.parent))
        report = await service.sync()
        projects = await service.list_projects(folder.id)
        images = await service.list_images(ListImagesOptions(search="fox"))
        extra = await service.get_history_full(projects[0].id, row)
        prompts = await service.get_prompts(projects[0].id, 2, 0)
        png = await service.decode_tensor(
            projects[0].id, "tensor_history_1", as_png=True, row_id=row
        )
        thumb = await service.get_thumb(projects[0].id, 1)
        path = await service.get_project_path(projects[0].id)
        return report, images, extra, prompts, png, thumb, path

    report, images, extra, prompts, png, thumb, path = asyncio.run(run())

    assert report.projects_scanned == 1
    assert images.total == 1
    assert images.images[0].prompt == "a red fox"
    assert extra.tensor_id == "tensor_history_1"
    assert extra.node.negative_text_prompt == "blurry"
    assert prompts is not None and prompts.positive == "a red fox"
    assert Image.open(io.BytesIO(png)).size == (2, 2)
    assert thumb == b"thumb"
    assert path == project.path


def test_exclude_and_rescan(service: ProjectsService, project_file) -> None:
    project = project_file()
    project.add_history(0, 0, generated=True)
    project.add_history(0, 1, generated=True)

    async def run():
        folder = await service.add_watch_folder(str(project.path.parent))
        await service.sync()
        project_id = (await service.list_projects(folder.id))[0].id
        excluded = await service.update_exclude(project_id, True)
        after_exclude = (await service.list_images()).total
        await service.update_exclude(project_id, False)
        rescanned = await service.scan_project(project_id, full_scan=True)
        return excluded, after_exclude, rescanned

    excluded, after_exclude, rescanned = asyncio.run(run())

    assert excluded is not None and excluded.excluded is True
    assert after_exclude == 0
    assert rescanned.inserted == 2


def test_predecessors_and_clip(service: ProjectsService, project_file) -> None:
    project = project_file()
    parent = project.add_history(1, 0, generated=True)
    child = project.add_history(1, 1, generated=True, clip_id=3, num_frames=2)
    project.add_history(1, 2, generated=True, clip_id=3, num_frames=2, index_in_a_clip=1)

    async def run():
        folder = await service.add_watch_folder(str(project.path.parent))
        await service.sync()
        project_id = (await service.list_projects(folder.id))[0].id
        found = await service.find_predecessors(project_id, child)
        clip = await service.get_clip(project_id, child)
        return found, clip

    found, clip = asyncio.run(run())

    assert [extra.row_id for extra in found] == [parent]
    assert [frame.index_in_a_clip for frame in clip] == [0, 1]


def test_unknown_project_raises(service: ProjectsService) -> None:
    with pytest.raises(CacheError):
        asyncio.run(service.scan_project(404))
