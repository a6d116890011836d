from __future__ import annotations

from dtm.records import TextHistoryNode, TextModification, TextRange, TextType
from dtm.text_edits import PromptPair, TextHistory, apply_modification


def _mod(kind: TextType, location: int, length: int, text: str) -> TextModification:
    return TextModification(type=kind, range=TextRange(location, length), text=text)


def _history() -> TextHistory:
    first = TextHistoryNode(
        lineage=1,
        logical_time=0,
        start_edits=0,
        start_positive_text="a cat",
        start_negative_text="",
        modifications=(
            _mod(TextType.POSITIVE, 2, 3, "dog"),
            _mod(TextType.NEGATIVE, 0, 0, "ugly"),
            _mod(TextType.POSITIVE, 100, 0, " running"),
        ),
    )
    second = TextHistoryNode(
        lineage=1,
        logical_time=1,
        start_edits=3,
        start_positive_text="fresh start",
        start_negative_text="ugly",
        modifications=(_mod(TextType.POSITIVE, 0, 5, "clean"),),
    )
    other = TextHistoryNode(2, 0, 0, "other lineage", "", ())
    return TextHistory([second, other, first])


def test_apply_modification_replaces_range() -> None:
    assert apply_modification("a cat", _mod(TextType.POSITIVE, 2, 3, "dog")) == "a dog"


def test_apply_modification_appends_past_end() -> None:
    assert apply_modification("abc", _mod(TextType.POSITIVE, 10, 2, "!")) == "abc!"


def test_apply_modification_clamps_length() -> None:
    assert apply_modification("abcdef", _mod(TextType.POSITIVE, 4, 50, "X")) == "abcdX"


def test_forward_reconstruction() -> None:
    history = _history()
    assert history.get_edit(1, 0) == PromptPair("a cat", "")
    assert history.get_edit(1, 1) == PromptPair("a dog", "")
    assert history.get_edit(1, 2) == PromptPair("a dog", "ugly")


def test_reconstruction_is_idempotent() -> None:
    history = _history()
    first = history.get_edit(1, 2)
    assert history.get_edit(1, 2) == first
    assert history.get_edit(1, 2) == PromptPair("a dog", "ugly")


def test_backward_request_restarts_from_checkpoint() -> None:
    history = _history()
    assert history.get_edit(1, 2) == PromptPair("a dog", "ugly")
    assert history.get_edit(1, 1) == PromptPair("a dog", "")
    assert history.get_edit(1, 0) == PromptPair("a cat", "")


def test_later_checkpoint_is_used() -> None:
    history = _history()
    assert history.get_edit(1, 3) == PromptPair("fresh start", "ugly")
    assert history.get_edit(1, 4) == PromptPair("clean start", "ugly")


def test_lineages_are_independent() -> None:
    history = _history()
    history.get_edit(1, 2)
    assert history.get_edit(2, 0) == PromptPair("other lineage", "")
    assert history.get_edit(3, 0) is None
    assert len(history) == 3
