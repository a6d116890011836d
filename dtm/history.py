from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from .records.tensor_history import HistoryNode


@dataclass(frozen=True)
class NodeRef:
    """A history row reduced to what predecessor selection needs."""

    row_id: int
    lineage: int
    logical_time: int


@dataclass
class HistoryExtra:
    row_id: int
    lineage: int
    logical_time: int
    node: HistoryNode
    tensor_id: str | None = None
    mask_id: str | None = None
    depth_map_id: str | None = None
    scribble_id: str | None = None
    pose_id: str | None = None
    color_palette_id: str | None = None
    custom_id: str | None = None
    moodboard_ids: list[str] = field(default_factory=list)
    project_path: str = ""


def select_predecessors(target: NodeRef, candidates: Iterable[NodeRef]) -> list[NodeRef]:
    """Pick the rows that may have produced ``target``.

    Only candidates one logical step earlier that were inserted before the
    target are considered. Of those, four roles are filled
    independently: same lineage, lineage minus one, the closest greater
    lineage and the furthest greater lineage. The result lists them in that
    order without repeating a row.
    """
    pool = [
        c
        for c in candidates
        if c.logical_time == target.logical_time - 1 and c.row_id < target.row_id
    ]
    same_lineage = _latest(c for c in pool if c.lineage == target.lineage)
    one_less = _latest(c for c in pool if c.lineage == target.lineage - 1)
    greater = [c for c in pool if c.lineage > target.lineage]
    next_closest = None
    highest_closest = None
    if greater:
        low = min(c.lineage for c in greater)
        high = max(c.lineage for c in greater)
        next_closest = _latest(c for c in greater if c.lineage == low)
        highest_closest = _latest(c for c in greater if c.lineage == high)

    result: list[NodeRef] = []
    seen: set[int] = set()
    for candidate in (same_lineage, one_less, next_closest, highest_closest):
        if candidate is None or candidate.row_id in seen:
            continue
        seen.add(candidate.row_id)
        result.append(candidate)
    return result


def _latest(candidates: Iterable[NodeRef]) -> NodeRef | None:
    best = None
    for candidate in candidates:
        if best is None or candidate.row_id > best.row_id:
            best = candidate
    return best
