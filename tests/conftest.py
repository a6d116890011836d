from __future__ import annotations

import sqlite3
import struct
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import flatbuffers
import fpzip
import numpy as np
import pytest

from dtm.records.tensor_history import NODE_SLOTS
from dtm.tensors import IMAGE_DATA_TYPE

_PREPEND = {
    "bool": "PrependBoolSlot",
    "int8": "PrependInt8Slot",
    "uint8": "PrependUint8Slot",
    "uint16": "PrependUint16Slot",
    "int32": "PrependInt32Slot",
    "uint32": "PrependUint32Slot",
    "int64": "PrependInt64Slot",
    "uint64": "PrependUint64Slot",
    "float32": "PrependFloat32Slot",
    "float64": "PrependFloat64Slot",
}


def _table_vector(builder: flatbuffers.Builder, offsets: Sequence[int]) -> int:
    builder.StartVector(4, len(offsets), 4)
    for offset in reversed(offsets):
        builder.PrependUOffsetTRelative(offset)
    return builder.EndVector()


def _weighted(builder: flatbuffers.Builder, entries: Sequence[tuple[str, float]]) -> int:
    offsets = []
    for file, weight in entries:
        name = builder.CreateString(file)
        builder.StartObject(3)
        builder.PrependUOffsetTRelativeSlot(0, name, 0)
        builder.PrependFloat32Slot(1, weight, 0.0)
        offsets.append(builder.EndObject())
    return _table_vector(builder, offsets)


def build_history(**fields: Any) -> bytes:
    """Serialize a history record holding only the given fields.

    ``loras`` and ``controls`` take ``(file, weight)`` pairs.
    """
    builder = flatbuffers.Builder(0)
    builder.ForceDefaults(True)
    offsets: dict[str, int] = {}
    for name, value in fields.items():
        _, kind = NODE_SLOTS[name]
        if kind == "string":
            offsets[name] = builder.CreateString(value)
        elif kind == "blob":
            offsets[name] = builder.CreateByteVector(value)
        elif kind in ("loras", "controls"):
            offsets[name] = _weighted(builder, value)
    builder.StartObject(len(NODE_SLOTS))
    for name, value in fields.items():
        index, kind = NODE_SLOTS[name]
        if name in offsets:
            builder.PrependUOffsetTRelativeSlot(index, offsets[name], 0)
        else:
            getattr(builder, _PREPEND[kind])(index, value, 0)
    builder.Finish(builder.EndObject())
    return bytes(builder.Output())


def build_text_history(
    lineage: int,
    logical_time: int,
    start_edits: int,
    positive: str,
    negative: str = "",
    modifications: Sequence[tuple[int, int, int, str]] = (),
) -> bytes:
    """Serialize a text checkpoint; modifications are ``(type, location, length, text)``."""
    builder = flatbuffers.Builder(0)
    mod_offsets = []
    for kind, location, length, text in modifications:
        text_offset = builder.CreateString(text)
        builder.StartObject(3)
        builder.PrependInt8Slot(0, kind, 0)
        builder.Prep(4, 8)
        builder.PrependInt32(length)
        builder.PrependInt32(location)
        builder.PrependStructSlot(1, builder.Offset(), 0)
        builder.PrependUOffsetTRelativeSlot(2, text_offset, 0)
        mod_offsets.append(builder.EndObject())
    mods = _table_vector(builder, mod_offsets)
    pos = builder.CreateString(positive)
    neg = builder.CreateString(negative)
    builder.StartObject(6)
    builder.PrependInt64Slot(0, lineage, 0)
    builder.PrependInt64Slot(1, logical_time, 0)
    builder.PrependInt64Slot(2, start_edits, 0)
    builder.PrependUOffsetTRelativeSlot(3, pos, 0)
    builder.PrependUOffsetTRelativeSlot(4, neg, 0)
    builder.PrependUOffsetTRelativeSlot(5, mods, 0)
    builder.Finish(builder.EndObject())
    return bytes(builder.Output())


def image_dim(height: int, width: int, channels: int) -> bytes:
    return struct.pack("<4i", 1, height, width, channels)


def build_image_tensor(samples: np.ndarray) -> tuple[bytes, bytes]:
    """Compress an (height, width, channels) float array; returns (dim, data)."""
    height, width, channels = samples.shape
    data = fpzip.compress(np.ascontiguousarray(samples, dtype=np.float32), order="C")
    return image_dim(height, width, channels), bytes(data)


class ProjectFile:
    """Writes a minimal Draw Things project database."""

    def __init__(self, path: Path):
        self.path = path
        self.conn = sqlite3.connect(path, isolation_level=None)
        self.conn.executescript(
            """
            CREATE TABLE tensorhistorynode (
                __pk0 INTEGER, __pk1 INTEGER, p BLOB, PRIMARY KEY (__pk0, __pk1)
            );
            CREATE TABLE texthistorynode (
                __pk0 INTEGER, __pk1 INTEGER, p BLOB, PRIMARY KEY (__pk0, __pk1)
            );
            CREATE TABLE tensors (
                name TEXT PRIMARY KEY, type INTEGER, format INTEGER, datatype INTEGER,
                dim BLOB, data BLOB
            );
            CREATE TABLE thumbnailhistorynode (__pk0 INTEGER PRIMARY KEY, p BLOB);
            CREATE TABLE thumbnailhistoryhalfnode (__pk0 INTEGER PRIMARY KEY, p BLOB);
            """
        )

    def add_history(self, lineage: int, logical_time: int, **fields: Any) -> int:
        fields.setdefault("lineage", lineage)
        fields.setdefault("logical_time", logical_time)
        cur = self.conn.execute(
            "INSERT INTO tensorhistorynode(__pk0, __pk1, p) VALUES (?, ?, ?)",
            (lineage, logical_time, build_history(**fields)),
        )
        return int(cur.lastrowid)

    def add_raw_history(self, lineage: int, logical_time: int, blob: bytes | None) -> int:
        cur = self.conn.execute(
            "INSERT INTO tensorhistorynode(__pk0, __pk1, p) VALUES (?, ?, ?)",
            (lineage, logical_time, blob),
        )
        return int(cur.lastrowid)

    def add_text(self, lineage: int, logical_time: int, *args: Any, **kwargs: Any) -> None:
        self.conn.execute(
            "INSERT INTO texthistorynode(__pk0, __pk1, p) VALUES (?, ?, ?)",
            (lineage, logical_time, build_text_history(lineage, logical_time, *args, **kwargs)),
        )

    def add_tensor(
        self, name: str, dim: bytes, data: bytes, data_type: int = IMAGE_DATA_TYPE
    ) -> None:
        self.conn.execute(
            "INSERT INTO tensors(name, type, format, datatype, dim, data) "
            "VALUES (?, 1, 1, ?, ?, ?)",
            (name, data_type, dim, data),
        )

    def add_tensordata(self, lineage: int, logical_time: int, **ids: int) -> None:
        """Attach side tensors, e.g. ``f20=1, f22=3`` (column name to tensor number)."""
        columns = ("f20", "f22", "f24", "f26", "f28", "f30", "f32")
        for column in columns:
            self.conn.execute(
                f"CREATE TABLE IF NOT EXISTS tensordata__{column} "
                f"(rowid INTEGER PRIMARY KEY, {column} INTEGER)"
            )
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS tensordata "
            "(__pk0 INTEGER, __pk1 INTEGER, __pk2 INTEGER, p BLOB)"
        )
        cur = self.conn.execute(
            "INSERT INTO tensordata(__pk0, __pk1, __pk2, p) VALUES (?, ?, 0, x'')",
            (lineage, logical_time),
        )
        for column, value in ids.items():
            self.conn.execute(
                f"INSERT INTO tensordata__{column}(rowid, {column}) VALUES (?, ?)",
                (cur.lastrowid, value),
            )

    def add_moodboard(self, lineage: int, logical_time: int, shuffle_id: int) -> None:
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS tensormoodboarddata "
            "(__pk0 INTEGER, __pk1 INTEGER, __pk2 INTEGER, p BLOB)"
        )
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS tensormoodboarddata__f10 "
            "(rowid INTEGER PRIMARY KEY, f10 INTEGER)"
        )
        cur = self.conn.execute(
            "INSERT INTO tensormoodboarddata(__pk0, __pk1, __pk2, p) VALUES (?, ?, 0, x'')",
            (lineage, logical_time),
        )
        self.conn.execute(
            "INSERT INTO tensormoodboarddata__f10(rowid, f10) VALUES (?, ?)",
            (cur.lastrowid, shuffle_id),
        )

    def add_thumb(self, thumb_id: int, data: bytes, *, half: bool = False) -> None:
        table = "thumbnailhistoryhalfnode" if half else "thumbnailhistorynode"
        self.conn.execute(f"INSERT INTO {table}(__pk0, p) VALUES (?, ?)", (thumb_id, data))

    def close(self) -> None:
        self.conn.close()


@pytest.fixture
def history_blob() -> Callable[..., bytes]:
    return build_history


@pytest.fixture
def text_blob() -> Callable[..., bytes]:
    return build_text_history


@pytest.fixture
def image_tensor() -> Callable[[np.ndarray], tuple[bytes, bytes]]:
    return build_image_tensor


@pytest.fixture
def project_file(tmp_path: Path):
    """Factory for project files; every file is closed after the test."""
    created: list[ProjectFile] = []

    def make(name: str = "project.sqlite3", folder: Path | None = None) -> ProjectFile:
        directory = folder or tmp_path / "projects"
        directory.mkdir(parents=True, exist_ok=True)
        project = ProjectFile(directory / name)
        created.append(project)
        return project

    yield make
    for project in created:
        project.close()


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DTM_CONFIG", str(tmp_path / "config" / "config.json"))
    monkeypatch.setenv("DTM_DB", str(tmp_path / "cache.sqlite"))
    for name in (
        "DTM_SCAN_BATCH_SIZE",
        "DTM_POOL_CAPACITY",
        "DTM_POOL_IDLE_SECONDS",
        "DTM_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
