from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

TARGETS = {
    "model",
    "lora",
    "control",
    "sampler",
    "content",
    "seed",
    "steps",
    "width",
    "height",
    "textguidance",
    "shift",
}

OPERATORS = {"eq", "neq", "gt", "gte", "lt", "lte", "is", "isnot", "has", "doesnothave"}

_NUMERIC_COLUMNS = {
    "seed": "images.seed",
    "steps": "images.steps",
    "width": "images.start_width",
    "height": "images.start_height",
    "textguidance": "images.guidance_scale",
    "shift": "images.shift",
}

_COMPARISONS = {"eq": "=", "neq": "!=", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}

_LINK_TABLES = {
    "lora": ("image_loras", "lora_id"),
    "control": ("image_controls", "control_id"),
}

CONTENT_FLAGS = {
    "mask": "images.has_mask",
    "depth": "images.has_depth",
    "pose": "images.has_pose",
    "color": "images.has_color",
    "custom": "images.has_custom",
    "scribble": "images.has_scribble",
    "shuffle": "images.has_shuffle",
}


@dataclass
class ListImagesFilter:
    target: str
    operator: str
    value: list[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.target = self.target.lower()
        self.operator = self.operator.lower()
        if self.target not in TARGETS:
            raise ValueError(f"unknown filter target: {self.target}")
        if self.operator not in OPERATORS:
            raise ValueError(f"unknown filter operator: {self.operator}")
        if not isinstance(self.value, list):
            self.value = [self.value]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ListImagesFilter:
        return cls(
            target=str(data.get("target", "")),
            operator=str(data.get("operator", "")),
            value=data.get("value", []),
        )

    def to_sql(self) -> tuple[str, list[Any]]:
        """Return a WHERE fragment and its parameters."""
        if self.target in _NUMERIC_COLUMNS:
            return self._numeric()
        if self.target in ("model", "sampler"):
            column = "images.model_id" if self.target == "model" else "images.sampler"
            return self._membership(column)
        if self.target in _LINK_TABLES:
            return self._linked()
        return self._content()

    def _unsupported(self) -> ValueError:
        return ValueError(f"operator {self.operator} not supported for {self.target}")

    def _ints(self) -> list[int]:
        if not self.value:
            raise ValueError(f"filter on {self.target} needs at least one value")
        try:
            return [int(v) for v in self.value]
        except (TypeError, ValueError) as exc:
            raise ValueError(f"filter on {self.target} expects integers") from exc

    def _numeric(self) -> tuple[str, list[Any]]:
        if self.operator not in _COMPARISONS:
            raise self._unsupported()
        if len(self.value) != 1:
            raise ValueError(f"filter on {self.target} expects a single value")
        try:
            number = float(self.value[0])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"filter on {self.target} expects a number") from exc
        column = _NUMERIC_COLUMNS[self.target]
        return f"{column} {_COMPARISONS[self.operator]} ?", [number]

    def _membership(self, column: str) -> tuple[str, list[Any]]:
        ids = self._ints()
        marks = ", ".join("?" for _ in ids)
        if self.operator == "is":
            return f"{column} IN ({marks})", ids
        if self.operator == "isnot":
            return f"({column} IS NULL OR {column} NOT IN ({marks}))", ids
        raise self._unsupported()

    def _linked(self) -> tuple[str, list[Any]]:
        table, column = _LINK_TABLES[self.target]
        ids = self._ints()
        marks = ", ".join("?" for _ in ids)
        subquery = f"SELECT image_id FROM {table} WHERE {column} IN ({marks})"
        if self.operator == "is":
            return f"images.id IN ({subquery})", ids
        if self.operator == "isnot":
            return f"images.id NOT IN ({subquery})", ids
        raise self._unsupported()

    def _content(self) -> tuple[str, list[Any]]:
        names = [str(v).lower() for v in self.value]
        unknown = [n for n in names if n not in CONTENT_FLAGS]
        if unknown or not names:
            raise ValueError(f"unknown content types: {unknown or names}")
        columns = [CONTENT_FLAGS[n] for n in names]
        if self.operator == "has":
            return "(" + " AND ".join(f"{c} = 1" for c in columns) + ")", []
        if self.operator == "is":
            return "(" + " OR ".join(f"{c} = 1" for c in columns) + ")", []
        if self.operator in ("doesnothave", "isnot"):
            return "(" + " AND ".join(f"{c} = 0" for c in columns) + ")", []
        raise self._unsupported()
