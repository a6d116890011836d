from __future__ import annotations

from dtm.history import NodeRef, select_predecessors


def test_predecessors_cover_four_lineages() -> None:
    target = NodeRef(row_id=20, lineage=5, logical_time=3)
    candidates = [
        NodeRef(2, 5, 2),
        NodeRef(9, 5, 2),
        NodeRef(3, 4, 2),
        NodeRef(4, 6, 2),
        NodeRef(5, 7, 2),
        NodeRef(6, 3, 2),
        NodeRef(7, 5, 1),
        NodeRef(25, 5, 2),
    ]

    found = select_predecessors(target, candidates)

    assert [c.row_id for c in found] == [9, 3, 4, 5]
    assert {c.lineage for c in found} == {5, 4, 6, 7}


def test_predecessors_skip_missing_roles() -> None:
    target = NodeRef(row_id=10, lineage=2, logical_time=1)
    found = select_predecessors(target, [NodeRef(1, 1, 0)])
    assert found == [NodeRef(1, 1, 0)]


def test_single_greater_lineage_is_not_repeated() -> None:
    target = NodeRef(row_id=10, lineage=2, logical_time=1)
    found = select_predecessors(target, [NodeRef(4, 3, 0), NodeRef(5, 3, 0)])
    assert found == [NodeRef(5, 3, 0)]


def test_no_candidates_at_first_step() -> None:
    target = NodeRef(row_id=1, lineage=0, logical_time=0)
    assert select_predecessors(target, [NodeRef(0, 0, 0)]) == []
