from __future__ import annotations

from .tensor_history import (
    Control,
    HistoryImport,
    HistoryNode,
    LoRA,
    ModelWeight,
    decode_history,
    wall_clock_datetime,
)
from .text_history import (
    TextHistoryNode,
    TextModification,
    TextRange,
    TextType,
    decode_text_history,
)

__all__ = [
    "Control",
    "HistoryImport",
    "HistoryNode",
    "LoRA",
    "ModelWeight",
    "TextHistoryNode",
    "TextModification",
    "TextRange",
    "TextType",
    "decode_history",
    "decode_text_history",
    "wall_clock_datetime",
]
