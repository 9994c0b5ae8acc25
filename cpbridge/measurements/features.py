"""
measurements/features.py
------------------------
Typed containers for one named measurement.

Value kinds:
  * ``double``: float64 array, one value per object
  * ``float``: float32 array, one value per object
  * ``int``: int32 array, one value per object
  * ``string``: a single aggregate string
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np

DOUBLE = "double"
FLOAT = "float"
INT = "int"
STRING = "string"

VALUE_KINDS = (DOUBLE, FLOAT, INT, STRING)
NUMERIC_KINDS = (DOUBLE, FLOAT, INT)

KIND_DTYPES: dict[str, np.dtype] = {
    DOUBLE: np.dtype(np.float64),
    FLOAT: np.dtype(np.float32),
    INT: np.dtype(np.int32),
}

FeatureValues = Union[np.ndarray, str]


def as_feature_array(kind: str, values) -> np.ndarray:
    """Copy *values* into a read-only 1-D array of the dtype for *kind*."""
    dtype = KIND_DTYPES[kind]
    arr = np.array(values, dtype=dtype, copy=True)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    elif arr.ndim != 1:
        raise ValueError(f"{kind} feature values must be one-dimensional, got shape {arr.shape}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class FeatureValueSet:
    """One named measurement with exactly one populated payload."""

    kind: str
    name: str
    values: FeatureValues

    def __post_init__(self) -> None:
        if self.kind not in VALUE_KINDS:
            raise ValueError(f"Unknown value kind '{self.kind}'")
        if not isinstance(self.name, str):
            raise ValueError("Feature name must be a string")
        if self.kind == STRING:
            if not isinstance(self.values, str):
                raise ValueError(f"String feature '{self.name}' needs a str value")
        else:
            if isinstance(self.values, str):
                raise ValueError(f"{self.kind} feature '{self.name}' needs an array, got str")
            object.__setattr__(self, "values", as_feature_array(self.kind, self.values))

    @property
    def is_numeric(self) -> bool:
        return self.kind in NUMERIC_KINDS

    def __len__(self) -> int:
        """Number of objects (1 for string features)."""
        return 1 if self.kind == STRING else len(self.values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureValueSet):
            return NotImplemented
        if (self.kind, self.name) != (other.kind, other.name):
            return False
        if self.kind == STRING:
            return self.values == other.values
        return canonical_bytes(self.values) == canonical_bytes(other.values)

    def __hash__(self) -> int:
        payload = self.values if self.kind == STRING else canonical_bytes(self.values)
        return hash((self.kind, self.name, payload))


def canonical_bytes(values: np.ndarray) -> bytes:
    """Bytes used for equality and hashing of numeric arrays.

    Floats compare bitwise except that every NaN maps to one canonical NaN,
    so NaN equals NaN while 0.0 and -0.0 stay distinct.
    """
    if values.dtype.kind == "f" and np.isnan(values).any():
        values = np.where(np.isnan(values), np.array(np.nan, dtype=values.dtype), values)
    return np.ascontiguousarray(values).tobytes()


@dataclass(frozen=True)
class FeatureDescription:
    """A feature as described by the worker after a run."""

    table: str
    name: str
    kind: str
    count: int
    """Number of values (objects) for numeric kinds; UTF-8 byte length for strings."""
