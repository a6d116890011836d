from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from ..errors import MalformedRecordError
from .flat import FlatTable


class TextType(IntEnum):
    POSITIVE = 0
    NEGATIVE = 1


@dataclass(frozen=True)
class TextRange:
    location: int
    length: int


@dataclass(frozen=True)
class TextModification:
    type: TextType
    range: TextRange
    text: str


@dataclass(frozen=True)
class TextHistoryNode:
    lineage: int
    logical_time: int
    start_edits: int
    start_positive_text: str
    start_negative_text: str
    modifications: tuple[TextModification, ...]


_RANGE_WIDTH = 8


def _decode_modification(table: FlatTable) -> TextModification:
    raw_type = table.scalar(0, "int8")
    try:
        text_type = TextType(raw_type)
    except ValueError:
        raise MalformedRecordError(f"unknown text modification type {raw_type}") from None
    pos = table.struct(1, _RANGE_WIDTH)
    if pos:
        text_range = TextRange(table.read("int32", pos), table.read("int32", pos + 4))
    else:
        text_range = TextRange(0, 0)
    return TextModification(type=text_type, range=text_range, text=table.string(2))


def decode_text_history(blob: bytes) -> TextHistoryNode:
    table = FlatTable.root(blob)
    return TextHistoryNode(
        lineage=table.scalar(0, "int64"),
        logical_time=table.scalar(1, "int64"),
        start_edits=table.scalar(2, "int64"),
        start_positive_text=table.string(3),
        start_negative_text=table.string(4),
        modifications=tuple(_decode_modification(item) for item in table.tables(5)),
    )
