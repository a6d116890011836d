"""Prompt text reconstruction from the text edit log.

Draw Things stores prompt text as a series of ``TextHistoryNode`` checkpoints,
each carrying the full text at ``start_edits`` followed by the modifications
made after it. The text at an arbitrary edit count is rebuilt by replaying
modifications from the nearest checkpoint. Requests tend to walk forward
through the log, so the last reconstructed pair is kept and resumed from when
possible.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass

from .records.text_history import TextHistoryNode, TextModification, TextType


@dataclass(frozen=True)
class PromptPair:
    positive: str
    negative: str


@dataclass(frozen=True)
class _CacheEntry:
    lineage: int
    edits: int
    prompts: PromptPair


def apply_modification(text: str, modification: TextModification) -> str:
    location = modification.range.location
    if location > len(text):
        return text + modification.text
    location = max(location, 0)
    end = min(location + max(modification.range.length, 0), len(text))
    return text[:location] + modification.text + text[end:]


class TextHistory:
    def __init__(self, nodes: Iterable[TextHistoryNode]):
        self._by_lineage: dict[int, list[TextHistoryNode]] = {}
        for node in nodes:
            self._by_lineage.setdefault(node.lineage, []).append(node)
        for entries in self._by_lineage.values():
            entries.sort(key=lambda n: n.start_edits)
        self._lock = threading.Lock()
        self._cache: _CacheEntry | None = None

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._by_lineage.values())

    def _checkpoint(self, lineage: int, target_edits: int) -> TextHistoryNode | None:
        best = None
        for node in self._by_lineage.get(lineage, ()):
            if node.start_edits > target_edits:
                break
            best = node
        return best

    def get_edit(self, lineage: int, target_edits: int) -> PromptPair | None:
        """Return the prompts as they were after ``target_edits`` edits."""
        node = self._checkpoint(lineage, target_edits)
        if node is None:
            return None

        with self._lock:
            cached = self._cache
            if cached and cached.lineage == lineage and cached.edits == target_edits:
                return cached.prompts

            if (
                cached
                and cached.lineage == lineage
                and node.start_edits <= cached.edits <= target_edits
            ):
                positive = cached.prompts.positive
                negative = cached.prompts.negative
                current = cached.edits
            else:
                positive = node.start_positive_text
                negative = node.start_negative_text
                current = node.start_edits

            first = current - node.start_edits
            last = min(target_edits - node.start_edits, len(node.modifications))
            for modification in node.modifications[first:last]:
                if modification.type == TextType.POSITIVE:
                    positive = apply_modification(positive, modification)
                else:
                    negative = apply_modification(negative, modification)
                current += 1

            prompts = PromptPair(positive, negative)
            self._cache = _CacheEntry(lineage, current, prompts)
            return prompts
