from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from ..enums import ItemType, ModelType
from .filters import ListImagesFilter


@dataclass
class WatchFolder:
    id: int
    path: str
    item_type: ItemType
    recursive: bool
    last_updated: int | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> WatchFolder:
        return cls(
            id=row["id"],
            path=row["path"],
            item_type=ItemType.from_value(row["item_type"]),
            recursive=bool(row["recursive"]),
            last_updated=row["last_updated"],
        )


@dataclass
class ProjectRecord:
    id: int
    watchfolder_id: int
    path: str
    filesize: int | None
    modified: int | None
    fingerprint: str | None
    last_id: int
    excluded: bool
    missing_on: int | None
    image_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ProjectRecord:
        keys = row.keys()
        return cls(
            id=row["id"],
            watchfolder_id=row["watchfolder_id"],
            path=row["path"],
            filesize=row["filesize"],
            modified=row["modified"],
            fingerprint=row["fingerprint"],
            last_id=row["last_id"],
            excluded=bool(row["excluded"]),
            missing_on=row["missing_on"],
            image_count=row["image_count"] if "image_count" in keys else 0,
        )


@dataclass(frozen=True)
class ModelInfo:
    """One entry of a Draw Things model catalogue file."""

    file: str
    name: str | None = None
    version: str | None = None


@dataclass
class ModelRecord:
    id: int
    filename: str
    model_type: ModelType
    name: str | None
    version: str | None
    count: int = 0


@dataclass
class ImageRecord:
    id: int
    project_id: int
    node_id: int
    preview_id: int | None
    clip_id: int
    num_frames: int | None
    model_file: str | None
    prompt: str
    negative_prompt: str
    seed: int | None
    steps: int | None
    guidance_scale: float | None
    shift: float | None
    sampler: int | None
    start_width: int | None
    start_height: int | None
    has_mask: bool
    has_depth: bool
    has_pose: bool
    has_color: bool
    has_custom: bool
    has_scribble: bool
    has_shuffle: bool
    wall_clock: str | None


@dataclass
class ImageCount:
    project_id: int
    count: int


@dataclass
class ListImagesOptions:
    project_ids: list[int] | None = None
    node_id: int | None = None
    search: str | None = None
    filters: list[ListImagesFilter] = field(default_factory=list)
    sort: str = "wall_clock"
    direction: str = "desc"
    take: int = 100
    skip: int = 0
    count: bool = False


@dataclass
class ListImagesResult:
    images: list[ImageRecord]
    total: int
    counts: list[ImageCount] | None = None
