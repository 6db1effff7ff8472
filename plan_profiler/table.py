import json
from dataclasses import asdict, dataclass
from numbers import Real
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from .devices import Device
from .errors import StructuralError
from .flatten import FULL_COLUMNS, MINIMAL_COLUMNS, TIMING_COLUMNS, VALIDATION_COLUMN

KNOWN_COLUMNS = FULL_COLUMNS + (VALIDATION_COLUMN,)

STRING_COLUMNS = {"operator_id", "operator_name", "preferred_device", "supported_devices", VALIDATION_COLUMN}
NUMBER_COLUMNS = {"cost"} | set(TIMING_COLUMNS)


@dataclass
class ComputeUnitCounts:
    total_operations: int = 0
    total_cpu: int = 0
    total_gpu: int = 0
    total_ane: int = 0

    @classmethod
    def zero(cls) -> "ComputeUnitCounts":
        return cls()

    def to_dict(self) -> dict:
        return asdict(self)


def _native(v):
    if hasattr(v, "item"):
        return v.item()
    return v


def _check_value(column: str, value, row_idx: int):
    if column == "op_number":
        if isinstance(value, bool) or not isinstance(value, int):
            raise StructuralError(f"row {row_idx}: 'op_number' must be an integer, got {value!r}", column)
    elif column in NUMBER_COLUMNS:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise StructuralError(f"row {row_idx}: '{column}' must be a number, got {value!r}", column)
        if column == "cost" and not 0.0 <= value <= 1.0:
            raise StructuralError(f"row {row_idx}: 'cost' must be within [0, 1], got {value!r}", column)
    elif column in STRING_COLUMNS:
        if not isinstance(value, str):
            raise StructuralError(f"row {row_idx}: '{column}' must be a string, got {value!r}", column)


class OperationTable:
    """
    Operation rows indexed by op_number, backed by a pandas DataFrame.

    Columns always follow schema order: the minimal columns, then the three
    timing columns in full-profile mode, then validation_message once the
    diagnostics have been joined in. A projection keeps a subset of them,
    always including op_number.
    """

    def __init__(self, frame: pd.DataFrame):
        frame = frame.reset_index(drop=True)
        frame.index = pd.Index(frame["op_number"].tolist()) if len(frame) else pd.Index([])
        self._frame = frame

    # ==================== Construction ====================
    @classmethod
    def empty(cls, full_profile: bool = False) -> "OperationTable":
        columns = FULL_COLUMNS if full_profile else MINIMAL_COLUMNS
        return cls(pd.DataFrame(columns=list(columns)))

    @classmethod
    def from_records(cls, rows: Iterable[Mapping[str, Any]], full_profile: Optional[bool] = None) -> "OperationTable":
        rows = list(rows)
        for i, row in enumerate(rows):
            if not isinstance(row, Mapping):
                raise StructuralError(f"row {i}: expected an object, got {type(row).__name__}", "row")
        if full_profile is None and rows:
            # no explicit mode: the first row defines the schema
            columns = [c for c in KNOWN_COLUMNS if c in rows[0]]
            if "op_number" not in columns:
                raise StructuralError("row 0: missing required field 'op_number'", "op_number")
        else:
            columns = list(FULL_COLUMNS if full_profile else MINIMAL_COLUMNS)
            if rows and VALIDATION_COLUMN in rows[0]:
                columns.append(VALIDATION_COLUMN)

        data: Dict[str, List[Any]] = {c: [] for c in columns}
        for i, row in enumerate(rows):
            for c in columns:
                if c not in row:
                    raise StructuralError(f"row {i}: missing required field '{c}'", c)
                _check_value(c, row[c], i)
                data[c].append(row[c])

        if not rows:
            return cls(pd.DataFrame(columns=columns))
        return cls(pd.DataFrame(data, columns=columns))

    @classmethod
    def from_json(cls, text: Union[str, bytes], full_profile: Optional[bool] = None) -> "OperationTable":
        try:
            rows = json.loads(text)
        except ValueError as e:
            raise StructuralError(f"Invalid JSON structure: {e}", "json") from e
        if not isinstance(rows, list):
            raise StructuralError("Invalid JSON structure: expected an array of operations", "operations")
        return cls.from_records(rows, full_profile=full_profile)

    # ==================== Queries ====================
    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def columns(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def full_profile(self) -> bool:
        return all(c in self._frame.columns for c in TIMING_COLUMNS)

    def row_count(self) -> int:
        return int(len(self._frame))

    def __len__(self) -> int:
        return self.row_count()

    def _require(self, column: str):
        if column not in self._frame.columns:
            raise StructuralError(f"Unknown column '{column}'", column)

    def project(self, column_names: Sequence[str]) -> "OperationTable":
        names = list(column_names)
        for c in names:
            if c not in KNOWN_COLUMNS:
                raise StructuralError(f"Column '{c}' is not part of the operation schema", c)
            self._require(c)
        if "op_number" not in names:
            raise StructuralError("Projection must keep 'op_number'", "op_number")
        ordered = [c for c in KNOWN_COLUMNS if c in names]
        return OperationTable(self._frame[ordered].copy())

    def count_where(self, column: str, predicate: Union[Callable[[Any], bool], Any]) -> int:
        self._require(column)
        series = self._frame[column]
        if callable(predicate):
            return int(sum(1 for v in series.tolist() if predicate(v)))
        return int((series == predicate).sum())

    def device_counts(self) -> ComputeUnitCounts:
        return ComputeUnitCounts(
            total_operations=self.row_count(),
            total_cpu=self.count_where("preferred_device", Device.CPU.value),
            total_gpu=self.count_where("preferred_device", Device.GPU.value),
            total_ane=self.count_where("preferred_device", Device.ANE.value),
        )

    def with_column(self, name: str, values: Sequence[Any]) -> "OperationTable":
        if name not in KNOWN_COLUMNS:
            raise StructuralError(f"Column '{name}' is not part of the operation schema", name)
        values = list(values)
        if len(values) != self.row_count():
            raise StructuralError(
                f"Column '{name}' has {len(values)} values for {self.row_count()} rows", name)
        frame = self._frame.copy()
        frame[name] = values
        ordered = [c for c in KNOWN_COLUMNS if c in frame.columns]
        return OperationTable(frame[ordered])

    # ==================== Serialization ====================
    def records(self) -> List[Dict[str, Any]]:
        return [
            {k: _native(v) for k, v in row.items()}
            for row in self._frame.to_dict(orient="records")
        ]

    def serialize(self) -> str:
        return json.dumps(self.records(), indent=2, ensure_ascii=False)

    def write(self, path: Union[str, Path]) -> str:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.serialize(), encoding="utf-8")
        return str(p.resolve())
