from __future__ import annotations

import sqlite3
from collections.abc import Mapping, Sequence
from typing import Any

from ..enums import ModelType
from ..records.tensor_history import HistoryImport
from .search import search_conditions
from .types import ImageCount, ImageRecord, ListImagesOptions, ListImagesResult

_IMAGE_COLUMNS = (
    "project_id",
    "node_id",
    "preview_id",
    "clip_id",
    "num_frames",
    "model_id",
    "refiner_id",
    "upscaler_id",
    "upscaler_scale_factor",
    "refiner_start",
    "prompt",
    "negative_prompt",
    "seed",
    "steps",
    "guidance_scale",
    "strength",
    "shift",
    "sampler",
    "seed_mode",
    "start_width",
    "start_height",
    "hires_fix",
    "tiled_decoding",
    "tiled_diffusion",
    "tea_cache",
    "cfg_zero_star",
    "has_mask",
    "has_depth",
    "has_pose",
    "has_color",
    "has_custom",
    "has_scribble",
    "has_shuffle",
    "wall_clock",
)

_INSERT_IMAGE = f"""
    INSERT INTO images({", ".join(_IMAGE_COLUMNS)})
    VALUES ({", ".join("?" for _ in _IMAGE_COLUMNS)})
    ON CONFLICT(project_id, node_id) DO NOTHING
    RETURNING id
"""

SORT_COLUMNS = {
    "wall_clock": "images.wall_clock",
    "seed": "images.seed",
    "steps": "images.steps",
    "id": "images.id",
    "node_id": "images.node_id",
}


def model_keys(item: HistoryImport) -> list[tuple[str, ModelType]]:
    keys = [(item.model, ModelType.MODEL), (item.refiner_model, ModelType.MODEL)]
    keys.append((item.upscaler, ModelType.UPSCALER))
    keys += [(lora.file, ModelType.LORA) for lora in item.loras]
    keys += [(control.file, ModelType.CNET) for control in item.controls]
    return [(name, kind) for name, kind in keys if name]


def _image_values(
    project_id: int, item: HistoryImport, models: Mapping[tuple[str, ModelType], int]
) -> tuple[Any, ...]:
    return (
        project_id,
        item.row_id,
        item.preview_id or None,
        item.clip_id,
        item.num_frames,
        models.get((item.model, ModelType.MODEL)),
        models.get((item.refiner_model, ModelType.MODEL)),
        models.get((item.upscaler, ModelType.UPSCALER)),
        item.upscaler_scale_factor or None,
        item.refiner_start if item.refiner_model else None,
        item.prompt,
        item.negative_prompt,
        item.seed,
        item.steps,
        item.guidance_scale,
        item.strength,
        item.shift,
        item.sampler,
        item.seed_mode,
        item.start_width,
        item.start_height,
        int(item.hires_fix),
        int(item.tiled_decoding),
        int(item.tiled_diffusion),
        int(item.tea_cache),
        int(item.cfg_zero_star),
        int(item.has_mask),
        int(item.has_depth),
        int(item.has_pose),
        int(item.has_color),
        int(item.has_custom),
        int(item.has_scribble),
        int(item.has_shuffle),
        item.wall_clock.isoformat(timespec="microseconds") if item.wall_clock else None,
    )


def insert_images(
    conn: sqlite3.Connection,
    project_id: int,
    items: Sequence[HistoryImport],
    models: Mapping[tuple[str, ModelType], int],
) -> int:
    """Insert images that are not cached yet; returns how many were new."""
    inserted = 0
    for item in items:
        # fetchall() finishes the RETURNING statement before the next write.
        rows = conn.execute(_INSERT_IMAGE, _image_values(project_id, item, models)).fetchall()
        if not rows:
            continue
        inserted += 1
        image_id = int(rows[0]["id"])
        for lora in item.loras:
            conn.execute(
                """
                INSERT INTO image_loras(image_id, lora_id, weight) VALUES (?, ?, ?)
                ON CONFLICT(image_id, lora_id) DO NOTHING
                """,
                (image_id, models[(lora.file, ModelType.LORA)], lora.weight),
            )
        for control in item.controls:
            conn.execute(
                """
                INSERT INTO image_controls(image_id, control_id, weight) VALUES (?, ?, ?)
                ON CONFLICT(image_id, control_id) DO NOTHING
                """,
                (image_id, models[(control.file, ModelType.CNET)], control.weight),
            )
    return inserted


def get_image_count(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) AS total FROM images").fetchone()
    return int(row["total"])


def _where(options: ListImagesOptions) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if options.project_ids:
        clauses.append(f"images.project_id IN ({', '.join('?' for _ in options.project_ids)})")
        params.extend(options.project_ids)
    if options.node_id is not None:
        clauses.append("images.node_id = ?")
        params.append(options.node_id)
    search_clauses, search_params = search_conditions(options.search)
    clauses.extend(search_clauses)
    params.extend(search_params)
    for item in options.filters:
        clause, values = item.to_sql()
        clauses.append(clause)
        params.extend(values)
    if not clauses:
        return "", params
    return "WHERE " + " AND ".join(clauses), params


def _image_from_row(row: sqlite3.Row) -> ImageRecord:
    return ImageRecord(
        id=row["id"],
        project_id=row["project_id"],
        node_id=row["node_id"],
        preview_id=row["preview_id"],
        clip_id=row["clip_id"],
        num_frames=row["num_frames"],
        model_file=row["model_file"],
        prompt=row["prompt"],
        negative_prompt=row["negative_prompt"],
        seed=row["seed"],
        steps=row["steps"],
        guidance_scale=row["guidance_scale"],
        shift=row["shift"],
        sampler=row["sampler"],
        start_width=row["start_width"],
        start_height=row["start_height"],
        has_mask=bool(row["has_mask"]),
        has_depth=bool(row["has_depth"]),
        has_pose=bool(row["has_pose"]),
        has_color=bool(row["has_color"]),
        has_custom=bool(row["has_custom"]),
        has_scribble=bool(row["has_scribble"]),
        has_shuffle=bool(row["has_shuffle"]),
        wall_clock=row["wall_clock"],
    )


def list_images(conn: sqlite3.Connection, options: ListImagesOptions) -> ListImagesResult:
    sort_column = SORT_COLUMNS.get(options.sort)
    if sort_column is None:
        raise ValueError(f"unknown sort column: {options.sort}")
    direction = options.direction.lower()
    if direction not in ("asc", "desc"):
        raise ValueError(f"unknown sort direction: {options.direction}")

    where, params = _where(options)
    total = conn.execute(f"SELECT COUNT(*) AS total FROM images {where}", params).fetchone()
    rows = conn.execute(
        f"""
        SELECT images.*, models.filename AS model_file
        FROM images
        LEFT JOIN models ON models.id = images.model_id
        {where}
        ORDER BY {sort_column} {direction}, images.id {direction}
        LIMIT ? OFFSET ?
        """,
        [*params, max(options.take, 0), max(options.skip, 0)],
    ).fetchall()

    counts = None
    if options.count:
        count_rows = conn.execute(
            f"""
            SELECT images.project_id AS project_id, COUNT(*) AS count
            FROM images {where}
            GROUP BY images.project_id
            ORDER BY images.project_id
            """,
            params,
        ).fetchall()
        counts = [ImageCount(row["project_id"], row["count"]) for row in count_rows]

    return ListImagesResult(
        images=[_image_from_row(row) for row in rows],
        total=int(total["total"]),
        counts=counts,
    )
