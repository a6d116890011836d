"""Read-only access to Draw Things project files.

A project file is a SQLite database written by Draw Things. History rows live
in ``tensorhistorynode`` (keyed by ``__pk0`` lineage and ``__pk1`` logical
time); side tensors referenced by a row are found through ``tensordata`` and
its ``tensordata__fNN`` index tables. Older or partially written projects may
lack some of these tables, in which case lookups degrade to empty results.
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .errors import DecodeError, StoreError
from .history import HistoryExtra, NodeRef, select_predecessors
from .records.tensor_history import HistoryImport, HistoryNode, decode_history
from .records.text_history import TextHistoryNode, decode_text_history
from .tensors import TensorRaw, TensorSize, tensor_size
from .text_edits import PromptPair, TextHistory

logger = logging.getLogger(__name__)

TENSOR_HISTORY = "tensorhistorynode"
TENSOR_DATA = "tensordata"
TEXT_HISTORY = "texthistorynode"
MOODBOARD = "tensormoodboarddata"
TENSORS = "tensors"
THUMBS = "thumbnailhistorynode"
THUMBS_HALF = "thumbnailhistoryhalfnode"

# tensordata side tables and the name prefix of the tensor each one points at.
_SIDE_TENSORS = (
    ("f20", "tensor_id", "tensor_history_"),
    ("f22", "mask_id", "binary_mask_"),
    ("f24", "depth_map_id", "depth_map_"),
    ("f26", "scribble_id", "scribble_"),
    ("f28", "pose_id", "pose_"),
    ("f30", "color_palette_id", "color_palette_"),
    ("f32", "custom_id", "custom_"),
)

_PRESENCE_FLAGS = {
    "f22": "has_mask",
    "f24": "has_depth",
    "f26": "has_scribble",
    "f28": "has_pose",
    "f30": "has_color",
    "f32": "has_custom",
}


@dataclass(frozen=True)
class StoreInfo:
    path: str
    history_count: int
    history_max_id: int


def _tensordata_join() -> str:
    columns = ",\n                ".join(f"{col}.{col} AS {col}" for col, _, _ in _SIDE_TENSORS)
    joins = "\n            ".join(
        f"LEFT JOIN tensordata__{col} AS {col} ON {col}.rowid = td.rowid"
        for col, _, _ in _SIDE_TENSORS
    )
    return f"""
        LEFT JOIN (
            SELECT
                td.rowid,
                td.__pk0,
                td.__pk1,
                {columns}
            FROM tensordata AS td
            {joins}
        ) AS td
        ON thn.__pk0 = td.__pk0 AND thn.__pk1 = td.__pk1
    """


def _full_query(where: str, *, has_tensordata: bool) -> str:
    if has_tensordata:
        ids = ",\n            ".join(
            f"MAX('{prefix}' || NULLIF(td.{col}, 0)) AS {name}"
            for col, name, prefix in _SIDE_TENSORS
        )
        join = _tensordata_join()
    else:
        ids = ",\n            ".join(f"NULL AS {name}" for _, name, _ in _SIDE_TENSORS)
        join = ""
    return f"""
        SELECT
            thn.rowid AS row_id,
            thn.__pk0 AS lineage,
            thn.__pk1 AS logical_time,
            thn.p AS data_blob,
            {ids}
        FROM tensorhistorynode AS thn
        {join}
        WHERE {where}
        GROUP BY thn.rowid
        ORDER BY thn.rowid
    """


def _import_query(*, has_tensordata: bool, has_moodboard: bool) -> str:
    if has_tensordata:
        flags = ["MAX('tensor_history_' || NULLIF(td.f20, 0)) AS tensor_id"]
        flags += [
            f"COALESCE(MAX(td.{col}) > 0, 0) AS {name}" for col, name in _PRESENCE_FLAGS.items()
        ]
        join = _tensordata_join()
    else:
        flags = ["NULL AS tensor_id"] + [f"0 AS {name}" for name in _PRESENCE_FLAGS.values()]
        join = ""
    if has_moodboard:
        flags.append(
            """EXISTS (
                SELECT 1 FROM tensormoodboarddata AS tmd
                WHERE tmd.__pk0 = thn.__pk0 AND tmd.__pk1 = thn.__pk1
            ) AS has_shuffle"""
        )
    else:
        flags.append("0 AS has_shuffle")
    selected = ",\n            ".join(flags)
    return f"""
        SELECT
            thn.rowid AS row_id,
            thn.p AS data_blob,
            {selected}
        FROM tensorhistorynode AS thn
        {join}
        WHERE thn.rowid >= ? AND thn.rowid < ?
        GROUP BY thn.rowid
        ORDER BY thn.rowid
    """


class ProjectStore:
    """One open, read-only Draw Things project file."""

    def __init__(self, path: Path | str):
        self.path = str(Path(path).expanduser())
        uri = Path(self.path).resolve().as_uri() + "?mode=ro"
        try:
            self.conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open project {self.path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set[str] = set()
        self._text_history: TextHistory | None = None
        self.refresh_tables()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"query failed on {self.path}: {exc}") from exc

    def refresh_tables(self) -> None:
        rows = self._query("SELECT name FROM sqlite_master WHERE type = 'table'")
        self._tables = {row["name"] for row in rows}

    def has_table(self, name: str) -> bool:
        if name not in self._tables:
            # The app may have created it since the store was opened.
            self.refresh_tables()
        return name in self._tables

    def _require(self, name: str) -> None:
        if not self.has_table(name):
            raise StoreError(f"table {name} not found in {self.path}")

    def _tensordata_ready(self) -> bool:
        if not self.has_table(TENSOR_DATA):
            return False
        return all(self.has_table(f"tensordata__{col}") for col, _, _ in _SIDE_TENSORS)

    def get_info(self) -> StoreInfo:
        if not self.has_table(TENSOR_HISTORY):
            return StoreInfo(self.path, 0, 0)
        row = self._query(
            "SELECT COUNT(*) AS total, MAX(rowid) AS last_id FROM tensorhistorynode"
        )[0]
        return StoreInfo(self.path, int(row["total"]), int(row["last_id"] or 0))

    def get_text_history(self) -> list[TextHistoryNode]:
        if not self.has_table(TEXT_HISTORY):
            return []
        nodes: list[TextHistoryNode] = []
        for row in self._query("SELECT p FROM texthistorynode ORDER BY rowid"):
            try:
                nodes.append(decode_text_history(row["p"]))
            except DecodeError:
                logger.warning(
                    "text history: skipped undecodable row in %s", self.path, exc_info=True
                )
        return nodes

    @property
    def text_history(self) -> TextHistory:
        with self._lock:
            if self._text_history is None:
                self._text_history = TextHistory(self.get_text_history())
            return self._text_history

    def _prompts_for(self, node: HistoryNode) -> PromptPair | None:
        if node.text_prompt.strip() or node.negative_text_prompt.strip():
            return None
        return self.text_history.get_edit(node.text_lineage, node.text_edits)

    def get_histories(self, first_id: int, count: int) -> list[HistoryImport]:
        """Import projections for rows with ``first_id <= rowid < first_id + count``.

        Rows that cannot be decoded are logged and left out.
        """
        if not self.has_table(TENSOR_HISTORY):
            return []
        sql = _import_query(
            has_tensordata=self._tensordata_ready(),
            has_moodboard=self.has_table(MOODBOARD),
        )
        items: list[HistoryImport] = []
        for row in self._query(sql, (first_id, first_id + count)):
            try:
                node = decode_history(row["data_blob"])
            except DecodeError:
                logger.warning(
                    "history: skipped undecodable row %s in %s",
                    row["row_id"],
                    self.path,
                    exc_info=True,
                )
                continue
            item = HistoryImport.from_node(
                row["row_id"],
                node,
                tensor_id=row["tensor_id"],
                has_mask=bool(row["has_mask"]),
                has_depth=bool(row["has_depth"]),
                has_scribble=bool(row["has_scribble"]),
                has_pose=bool(row["has_pose"]),
                has_color=bool(row["has_color"]),
                has_custom=bool(row["has_custom"]),
                has_shuffle=bool(row["has_shuffle"]),
            )
            prompts = self._prompts_for(node)
            if prompts is not None:
                item = dataclasses.replace(
                    item,
                    prompt=prompts.positive.strip(),
                    negative_prompt=prompts.negative.strip(),
                )
            items.append(item)
        return items

    def _extras(self, where: str, params: tuple) -> list[HistoryExtra]:
        sql = _full_query(where, has_tensordata=self._tensordata_ready())
        extras: list[HistoryExtra] = []
        for row in self._query(sql, params):
            try:
                node = decode_history(row["data_blob"])
            except DecodeError:
                logger.warning("history: skipped undecodable row %s", row["row_id"], exc_info=True)
                continue
            extras.append(
                HistoryExtra(
                    row_id=row["row_id"],
                    lineage=row["lineage"],
                    logical_time=row["logical_time"],
                    node=node,
                    project_path=self.path,
                    **{name: row[name] for _, name, _ in _SIDE_TENSORS},
                )
            )
        return extras

    def get_history_full(self, row_id: int) -> HistoryExtra:
        self._require(TENSOR_HISTORY)
        rows = self._query(
            _full_query("thn.rowid = ?", has_tensordata=self._tensordata_ready()), (row_id,)
        )
        if not rows:
            raise StoreError(f"history row {row_id} not found in {self.path}")
        row = rows[0]
        try:
            node = decode_history(row["data_blob"])
        except DecodeError as exc:
            raise StoreError(f"history row {row_id} in {self.path} is malformed") from exc
        prompts = self._prompts_for(node)
        if prompts is not None:
            node = dataclasses.replace(
                node, text_prompt=prompts.positive, negative_text_prompt=prompts.negative
            )
        return HistoryExtra(
            row_id=row["row_id"],
            lineage=row["lineage"],
            logical_time=row["logical_time"],
            node=node,
            moodboard_ids=self.get_shuffle_ids(row["lineage"], row["logical_time"]),
            project_path=self.path,
            **{name: row[name] for _, name, _ in _SIDE_TENSORS},
        )

    def find_predecessor_candidates(
        self, row_id: int, lineage: int, logical_time: int
    ) -> list[HistoryExtra]:
        self._require(TENSOR_HISTORY)
        candidates = self._extras("thn.__pk1 = ? AND thn.rowid < ?", (logical_time - 1, row_id))
        by_row = {c.row_id: c for c in candidates}
        target = NodeRef(row_id=row_id, lineage=lineage, logical_time=logical_time)
        refs = [NodeRef(c.row_id, c.lineage, c.logical_time) for c in candidates]
        return [by_row[ref.row_id] for ref in select_predecessors(target, refs)]

    def get_histories_from_clip(self, row_id: int) -> list[HistoryImport]:
        """The frames of the clip that starts at ``row_id``."""
        first = self.get_history_full(row_id)
        return self.get_histories(row_id, first.node.num_frames)

    def get_shuffle_ids(self, lineage: int, logical_time: int) -> list[str]:
        if not self.has_table(MOODBOARD) or not self.has_table(f"{MOODBOARD}__f10"):
            return []
        rows = self._query(
            """
            SELECT 'shuffle_' || f10.f10 AS shuffle_id
            FROM tensormoodboarddata AS tmd
            LEFT JOIN tensormoodboarddata__f10 AS f10 ON tmd.rowid = f10.rowid
            WHERE tmd.__pk0 = ? AND tmd.__pk1 = ?
            ORDER BY tmd.rowid
            """,
            (lineage, logical_time),
        )
        return [row["shuffle_id"] for row in rows if row["shuffle_id"] is not None]

    def get_tensor_raw(self, name: str) -> TensorRaw:
        self._require(TENSORS)
        rows = self._query(
            "SELECT type, format, datatype, dim, data FROM tensors WHERE name = ?", (name,)
        )
        if not rows:
            raise StoreError(f"tensor {name} not found in {self.path}")
        row = rows[0]
        return TensorRaw(
            name=name,
            tensor_type=row["type"],
            format=row["format"],
            data_type=row["datatype"],
            dim=bytes(row["dim"]),
            data=bytes(row["data"]),
        )

    def get_tensor_size(self, name: str) -> TensorSize:
        return tensor_size(self.get_tensor_raw(name))

    def _thumbnail(self, table: str, thumb_id: int) -> bytes:
        self._require(table)
        rows = self._query(f"SELECT p FROM {table} WHERE __pk0 = ?", (thumb_id,))
        if not rows:
            raise StoreError(f"thumbnail {thumb_id} not found in {self.path}")
        return bytes(rows[0]["p"])

    def get_thumb(self, thumb_id: int) -> bytes:
        return self._thumbnail(THUMBS, thumb_id)

    def get_thumb_half(self, thumb_id: int) -> bytes:
        return self._thumbnail(THUMBS_HALF, thumb_id)


class ProjectStorePool:
    """Keeps recently used project stores open.

    At most ``capacity`` stores stay open; the least recently used one is
    closed first, and any store unused for ``idle_seconds`` is closed on the
    next access to the pool.
    """

    def __init__(
        self,
        capacity: int = 16,
        idle_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        opener: Callable[[str], ProjectStore] = ProjectStore,
    ):
        self.capacity = capacity
        self.idle_seconds = idle_seconds
        self._clock = clock
        self._opener = opener
        self._lock = threading.Lock()
        self._stores: OrderedDict[str, tuple[ProjectStore, float]] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._stores)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return str(path) in self._stores

    def _expire(self, now: float) -> list[ProjectStore]:
        expired = [
            path for path, (_, used) in self._stores.items() if now - used > self.idle_seconds
        ]
        return [self._stores.pop(path)[0] for path in expired]

    def get(self, path: Path | str) -> ProjectStore:
        key = str(path)
        closing: list[ProjectStore] = []
        try:
            with self._lock:
                now = self._clock()
                closing.extend(self._expire(now))
                entry = self._stores.get(key)
                if entry is None:
                    store = self._opener(key)
                else:
                    store = entry[0]
                self._stores[key] = (store, now)
                self._stores.move_to_end(key)
                while len(self._stores) > self.capacity:
                    closing.append(self._stores.popitem(last=False)[1][0])
        finally:
            for stale in closing:
                logger.debug("pool: closing %s", stale.path)
                stale.close()
        return store

    def evict(self, path: Path | str) -> None:
        with self._lock:
            entry = self._stores.pop(str(path), None)
        if entry is not None:
            entry[0].close()

    def close(self) -> None:
        with self._lock:
            stores = [store for store, _ in self._stores.values()]
            self._stores.clear()
        for store in stores:
            store.close()
