"""Bounds-checked access to FlatBuffers tables.

The generated FlatBuffers readers trust their input. Project files come from
disk, so every offset is checked against the buffer before the
``flatbuffers`` runtime is asked to read it, and any violation surfaces as a
:class:`MalformedRecordError` instead of an ``IndexError`` or garbage values.
"""

from __future__ import annotations

from flatbuffers import encode, number_types
from flatbuffers.table import Table

from ..errors import MalformedRecordError

_UOFFSET = number_types.UOffsetTFlags
_SOFFSET = number_types.SOffsetTFlags
_VOFFSET = number_types.VOffsetTFlags

SCALARS: dict[str, type] = {
    "bool": number_types.BoolFlags,
    "int8": number_types.Int8Flags,
    "uint8": number_types.Uint8Flags,
    "uint16": number_types.Uint16Flags,
    "int32": number_types.Int32Flags,
    "uint32": number_types.Uint32Flags,
    "int64": number_types.Int64Flags,
    "uint64": number_types.Uint64Flags,
    "float32": number_types.Float32Flags,
    "float64": number_types.Float64Flags,
}


def slot(index: int) -> int:
    """Vtable offset of the field declared at ``index`` in the schema."""
    return 4 + 2 * index


class FlatTable:
    def __init__(self, buf: bytes, pos: int):
        self._buf = buf
        self._size = len(buf)
        self._check(pos, _SOFFSET.bytewidth, "table")
        vtable = pos - encode.Get(_SOFFSET.packer_type, buf, pos)
        self._check(vtable, 2 * _VOFFSET.bytewidth, "vtable")
        vtable_size = encode.Get(_VOFFSET.packer_type, buf, vtable)
        table_size = encode.Get(_VOFFSET.packer_type, buf, vtable + _VOFFSET.bytewidth)
        if vtable_size < 4 or vtable_size % 2:
            raise MalformedRecordError(f"bad vtable size {vtable_size}")
        self._check(vtable, vtable_size, "vtable")
        if table_size < _SOFFSET.bytewidth:
            raise MalformedRecordError(f"bad table size {table_size}")
        self._check(pos, table_size, "table")
        self._vtable_size = vtable_size
        self._table_size = table_size
        self._tab = Table(buf, pos)

    @classmethod
    def root(cls, buf: bytes | bytearray | memoryview) -> FlatTable:
        if not isinstance(buf, (bytes, bytearray, memoryview)):
            raise MalformedRecordError(f"expected a byte buffer, got {type(buf).__name__}")
        data = bytes(buf)
        if len(data) < _UOFFSET.bytewidth:
            raise MalformedRecordError("buffer too small for a root offset")
        return cls(data, encode.Get(_UOFFSET.packer_type, data, 0))

    def _check(self, start: int, length: int, what: str) -> None:
        if start < 0 or length < 0 or start + length > self._size:
            raise MalformedRecordError(
                f"{what} out of bounds: [{start}, {start + length}) in {self._size} bytes"
            )

    def _field(self, index: int, width: int) -> int:
        """Absolute position of a present field, or 0 when absent."""
        voffset = slot(index)
        if voffset >= self._vtable_size:
            return 0
        offset = self._tab.Offset(voffset)
        if not offset:
            return 0
        if offset + width > self._table_size:
            raise MalformedRecordError(f"field {index} overruns its table")
        return self._tab.Pos + offset

    def _indirect(self, index: int) -> int:
        pos = self._field(index, _UOFFSET.bytewidth)
        if not pos:
            return 0
        target = pos + encode.Get(_UOFFSET.packer_type, self._buf, pos)
        self._check(target, _UOFFSET.bytewidth, f"field {index} target")
        return target

    def scalar(self, index: int, kind: str, default=0):
        flags = SCALARS[kind]
        pos = self._field(index, flags.bytewidth)
        if not pos:
            return default
        return self._tab.Get(flags, pos)

    def string(self, index: int, default: str = "") -> str:
        raw = self.blob(index)
        if raw is None:
            return default
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedRecordError(f"field {index} is not valid utf-8") from exc

    def blob(self, index: int) -> bytes | None:
        target = self._indirect(index)
        if not target:
            return None
        length = encode.Get(_UOFFSET.packer_type, self._buf, target)
        start = target + _UOFFSET.bytewidth
        self._check(start, length, f"field {index} data")
        return self._buf[start : start + length]

    def struct(self, index: int, width: int) -> int:
        """Absolute position of an inline struct, or 0 when absent."""
        return self._field(index, width)

    def read(self, kind: str, pos: int):
        flags = SCALARS[kind]
        self._check(pos, flags.bytewidth, "struct member")
        return encode.Get(flags.packer_type, self._buf, pos)

    def _vector(self, index: int) -> list[int]:
        """Positions of the offset elements of a vector field."""
        target = self._indirect(index)
        if not target:
            return []
        count = encode.Get(_UOFFSET.packer_type, self._buf, target)
        start = target + _UOFFSET.bytewidth
        self._check(start, count * _UOFFSET.bytewidth, f"field {index} vector")
        return [start + i * _UOFFSET.bytewidth for i in range(count)]

    def tables(self, index: int) -> list[FlatTable]:
        return [
            FlatTable(self._buf, elem + encode.Get(_UOFFSET.packer_type, self._buf, elem))
            for elem in self._vector(index)
        ]

    def strings(self, index: int) -> list[str]:
        values: list[str] = []
        for elem in self._vector(index):
            text = elem + encode.Get(_UOFFSET.packer_type, self._buf, elem)
            self._check(text, _UOFFSET.bytewidth, f"field {index} string")
            length = encode.Get(_UOFFSET.packer_type, self._buf, text)
            start = text + _UOFFSET.bytewidth
            self._check(start, length, f"field {index} string")
            try:
                values.append(self._buf[start : start + length].decode("utf-8"))
            except UnicodeDecodeError as exc:
                raise MalformedRecordError(f"field {index} is not valid utf-8") from exc
        return values
