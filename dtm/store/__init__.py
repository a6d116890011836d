from __future__ import annotations

from ._store import ProjectsDb
from .filters import ListImagesFilter
from .types import (
    ImageCount,
    ImageRecord,
    ListImagesOptions,
    ListImagesResult,
    ModelInfo,
    ModelRecord,
    ProjectRecord,
    WatchFolder,
)

__all__ = [
    "ImageCount",
    "ImageRecord",
    "ListImagesFilter",
    "ListImagesOptions",
    "ListImagesResult",
    "ModelInfo",
    "ModelRecord",
    "ProjectRecord",
    "ProjectsDb",
    "WatchFolder",
]
