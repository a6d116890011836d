from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path

from ..enums import ModelType
from .types import ModelInfo, ModelRecord


def resolve_models(
    conn: sqlite3.Connection, keys: Iterable[tuple[str, ModelType]]
) -> dict[tuple[str, ModelType], int]:
    """Map (filename, type) pairs to model ids, creating unknown models."""
    wanted = {(name, ModelType(kind)) for name, kind in keys if name}
    ids: dict[tuple[str, ModelType], int] = {}
    for filename, model_type in sorted(wanted):
        conn.execute(
            """
            INSERT INTO models(filename, model_type) VALUES (?, ?)
            ON CONFLICT(filename, model_type) DO NOTHING
            """,
            (filename, int(model_type)),
        )
        row = conn.execute(
            "SELECT id FROM models WHERE filename = ? AND model_type = ?",
            (filename, int(model_type)),
        ).fetchone()
        ids[(filename, model_type)] = int(row["id"])
    return ids


def update_models(
    conn: sqlite3.Connection, infos: Iterable[ModelInfo], model_type: ModelType
) -> int:
    count = 0
    for info in infos:
        if not info.file:
            continue
        conn.execute(
            """
            INSERT INTO models(filename, model_type, name, version) VALUES (?, ?, ?, ?)
            ON CONFLICT(filename, model_type) DO UPDATE SET
                name = excluded.name,
                version = excluded.version
            WHERE models.name IS NOT excluded.name OR models.version IS NOT excluded.version
            """,
            (info.file, int(model_type), info.name, info.version),
        )
        count += 1
    return count


def read_model_info(path: Path | str) -> list[ModelInfo]:
    """Parse a Draw Things model catalogue (a JSON list of {file, name, version})."""
    raw = Path(path).read_text()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid model info json: {path}") from exc
    if not isinstance(data, list):
        raise ValueError(f"model info must be a list: {path}")
    infos: list[ModelInfo] = []
    for entry in data:
        if not isinstance(entry, dict) or not isinstance(entry.get("file"), str):
            continue
        version = entry.get("version")
        infos.append(
            ModelInfo(
                file=entry["file"],
                name=entry.get("name") if isinstance(entry.get("name"), str) else None,
                version=str(version) if version is not None else None,
            )
        )
    return infos


_USAGE_SQL = """
    SELECT * FROM (
        SELECT
            m.id, m.filename, m.model_type, m.name, m.version,
            (SELECT COUNT(*) FROM images i WHERE i.model_id = m.id OR i.refiner_id = m.id)
            + (SELECT COUNT(*) FROM images i WHERE i.upscaler_id = m.id)
            + (SELECT COUNT(*) FROM image_loras l WHERE l.lora_id = m.id)
            + (SELECT COUNT(*) FROM image_controls c WHERE c.control_id = m.id) AS count
        FROM models m
        WHERE (? IS NULL OR m.model_type = ?)
    )
    WHERE count > 0
    ORDER BY count DESC, filename
"""


def list_models(conn: sqlite3.Connection, model_type: ModelType | None = None) -> list[ModelRecord]:
    kind = int(model_type) if model_type is not None else None
    rows = conn.execute(_USAGE_SQL, (kind, kind)).fetchall()
    return [
        ModelRecord(
            id=row["id"],
            filename=row["filename"],
            model_type=ModelType.from_value(row["model_type"]),
            name=row["name"],
            version=row["version"],
            count=row["count"],
        )
        for row in rows
    ]
