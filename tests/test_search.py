from __future__ import annotations

import pytest

from dtm.store.filters import ListImagesFilter
from dtm.store.search import fts_query, process_prompt, search_conditions, split_search


def test_process_prompt_normalizes() -> None:
    assert (
        process_prompt("(masterpiece), woman | cyber-punk portrait")
        == "masterpiece woman cyber-punk portrait"
    )
    assert process_prompt("  ＢＩＧ   Cat\n[detailed] ") == "big cat detailed"


def test_split_search_extracts_phrases() -> None:
    phrases, rest = split_search('"red hair" woman "blue eyes" portrait')
    assert phrases == ["red hair", "blue eyes"]
    assert rest.split() == ["woman", "portrait"]


def test_fts_query_quotes_terms() -> None:
    assert fts_query(["cyber-punk", "a"]) == '"cyber-punk" OR "a"'


def test_search_conditions() -> None:
    clauses, params = search_conditions('"red hair" cyber-punk')
    assert clauses[0] == "images.prompt LIKE ?"
    assert params == ["%red hair%", '"cyber-punk"']
    assert search_conditions("   ") == ([], [])


def test_numeric_filter_sql() -> None:
    clause, params = ListImagesFilter("steps", "gte", [20]).to_sql()
    assert clause == "images.steps >= ?"
    assert params == [20.0]


def test_membership_filters() -> None:
    clause, params = ListImagesFilter("model", "isnot", [1, 2]).to_sql()
    assert clause == "(images.model_id IS NULL OR images.model_id NOT IN (?, ?))"
    assert params == [1, 2]
    clause, _ = ListImagesFilter("lora", "is", [3]).to_sql()
    assert "image_loras" in clause


def test_content_filters() -> None:
    has_all, _ = ListImagesFilter("content", "has", ["mask", "depth"]).to_sql()
    assert has_all == "(images.has_mask = 1 AND images.has_depth = 1)"
    any_of, _ = ListImagesFilter("content", "is", ["pose", "color"]).to_sql()
    assert any_of == "(images.has_pose = 1 OR images.has_color = 1)"
    none_of, _ = ListImagesFilter("content", "doesnothave", ["shuffle"]).to_sql()
    assert none_of == "(images.has_shuffle = 0)"


@pytest.mark.parametrize(
    ("target", "operator", "value"),
    [
        ("colour", "is", [1]),
        ("steps", "contains", [1]),
        ("steps", "is", [1]),
        ("seed", "eq", [1, 2]),
        ("content", "has", ["sparkles"]),
        ("sampler", "gt", [1]),
    ],
)
def test_invalid_filters_raise(target: str, operator: str, value: list) -> None:
    with pytest.raises(ValueError):
        ListImagesFilter(target, operator, value).to_sql()


def test_filter_from_dict_wraps_scalar() -> None:
    item = ListImagesFilter.from_dict({"target": "Seed", "operator": "EQ", "value": 5})
    assert (item.target, item.operator, item.value) == ("seed", "eq", [5])
