from __future__ import annotations

import json
from pathlib import Path

from rich import print

from dtm.errors import DtmError
from dtm.metadata import build_metadata
from dtm.tensors import decode_mask, decode_tensor

from .common import fail, open_project


def history_show_cmd(*, store_from_path, db_path: str | None, project: str, row_id: int) -> None:
    """Print the generation parameters of one history row as JSON."""

    store = open_project(store_from_path=store_from_path, db_path=db_path, project=project)
    try:
        extra = store.get_history_full(row_id)
        metadata = build_metadata(extra.node)
    except DtmError as exc:
        raise fail(str(exc)) from exc
    finally:
        store.close()
    payload = {
        "row_id": extra.row_id,
        "lineage": extra.lineage,
        "logical_time": extra.logical_time,
        "tensor_id": extra.tensor_id,
        "mask_id": extra.mask_id,
        "depth_map_id": extra.depth_map_id,
        "pose_id": extra.pose_id,
        "moodboard_ids": extra.moodboard_ids,
        "metadata": metadata,
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def history_predecessors_cmd(
    *, store_from_path, db_path: str | None, project: str, row_id: int
) -> None:
    store = open_project(store_from_path=store_from_path, db_path=db_path, project=project)
    try:
        target = store.get_history_full(row_id)
        found = store.find_predecessor_candidates(
            target.row_id, target.lineage, target.logical_time
        )
    except DtmError as exc:
        raise fail(str(exc)) from exc
    finally:
        store.close()
    if not found:
        print("No predecessors")
        return
    for extra in found:
        print(
            f"- row {extra.row_id}: lineage {extra.lineage}, "
            f"logical time {extra.logical_time}, tensor {extra.tensor_id or '-'}"
        )


def text_cmd(
    *, store_from_path, db_path: str | None, project: str, lineage: int, edits: int
) -> None:
    """Print the prompts as they were after a number of text edits."""

    store = open_project(store_from_path=store_from_path, db_path=db_path, project=project)
    try:
        prompts = store.text_history.get_edit(lineage, edits)
    except DtmError as exc:
        raise fail(str(exc)) from exc
    finally:
        store.close()
    if prompts is None:
        raise fail(f"No text history for lineage {lineage} at {edits} edits")
    print(f"[bold]Positive:[/bold] {prompts.positive}")
    print(f"[bold]Negative:[/bold] {prompts.negative}")


def tensor_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    name: str,
    output: str,
    row_id: int | None,
    scale: int | None,
    raw: bool,
    invert: bool,
) -> None:
    store = open_project(store_from_path=store_from_path, db_path=db_path, project=project)
    try:
        tensor = store.get_tensor_raw(name)
        if name.startswith(("binary_mask_", "scribble_")):
            data = decode_mask(tensor, scale=scale, invert=invert)
        else:
            node = store.get_history_full(row_id).node if row_id is not None else None
            data = decode_tensor(tensor, as_png=not raw, node=node, scale=scale)
    except DtmError as exc:
        raise fail(str(exc)) from exc
    finally:
        store.close()
    target = Path(output).expanduser()
    target.write_bytes(data)
    print(f"Wrote {len(data)} bytes to {target}")
