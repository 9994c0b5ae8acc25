"""
measurements/table.py
---------------------
MeasurementTable: all features of one result table (e.g. ``Image`` or an
object class such as ``Nuclei``) for one processed row.

Binary layout (big-endian)
--------------------------
Four sections in the order double, float, int, string::

    int32  count
    count × ( uint16 name_len, utf-8 name,
              numeric: int32 n, n × (f8 | f4 | i4)
              string:  uint16 value_len, utf-8 value )
"""

from __future__ import annotations

import io
import struct
from typing import BinaryIO, Iterator, Optional

import numpy as np

from cpbridge.core.exceptions import SerializationError
from cpbridge.measurements.features import (
    DOUBLE,
    FLOAT,
    INT,
    NUMERIC_KINDS,
    STRING,
    VALUE_KINDS,
    FeatureValueSet,
    FeatureValues,
    as_feature_array,
    canonical_bytes,
)

_COUNT = struct.Struct(">i")
_STRLEN = struct.Struct(">H")
_MAX_STR = 0xFFFF

# Big-endian element types of the persisted arrays
_WIRE_DTYPES = {
    DOUBLE: np.dtype(">f8"),
    FLOAT: np.dtype(">f4"),
    INT: np.dtype(">i4"),
}


class MeasurementTable:
    """Named, typed features of one result table; one map per value kind."""

    def __init__(self) -> None:
        self._features: dict[str, dict[str, FeatureValues]] = {k: {} for k in VALUE_KINDS}
        self._frozen = False

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def add(self, feature: FeatureValueSet) -> "MeasurementTable":
        if self._frozen:
            raise RuntimeError("MeasurementTable is frozen; build a new table instead")
        self._features[feature.kind][feature.name] = feature.values
        return self

    def add_double_feature(self, name: str, values) -> "MeasurementTable":
        return self.add(FeatureValueSet(DOUBLE, name, values))

    def add_float_feature(self, name: str, values) -> "MeasurementTable":
        return self.add(FeatureValueSet(FLOAT, name, values))

    def add_int_feature(self, name: str, values) -> "MeasurementTable":
        return self.add(FeatureValueSet(INT, name, values))

    def add_string_feature(self, name: str, value: str) -> "MeasurementTable":
        return self.add(FeatureValueSet(STRING, name, value))

    def freeze(self) -> "MeasurementTable":
        """Mark the table fully populated. Further adds raise."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def names(self, kind: str) -> list[str]:
        return list(self._features[kind])

    def values(self, kind: str, name: str) -> FeatureValues:
        return self._features[kind][name]

    def get(self, kind: str, name: str) -> Optional[FeatureValues]:
        return self._features[kind].get(name)

    def double_features(self) -> list[str]:
        return self.names(DOUBLE)

    def double_values(self, name: str) -> np.ndarray:
        return self._features[DOUBLE][name]  # type: ignore[return-value]

    def float_features(self) -> list[str]:
        return self.names(FLOAT)

    def float_values(self, name: str) -> np.ndarray:
        return self._features[FLOAT][name]  # type: ignore[return-value]

    def int_features(self) -> list[str]:
        return self.names(INT)

    def int_values(self, name: str) -> np.ndarray:
        return self._features[INT][name]  # type: ignore[return-value]

    def string_features(self) -> list[str]:
        return self.names(STRING)

    def string_value(self, name: str) -> str:
        return self._features[STRING][name]  # type: ignore[return-value]

    def features(self) -> Iterator[FeatureValueSet]:
        """Yield every feature, kind by kind, in insertion order."""
        for kind in VALUE_KINDS:
            for name, values in self._features[kind].items():
                yield FeatureValueSet(kind, name, values)

    def feature_names(self) -> list[str]:
        return sorted(name for kind in VALUE_KINDS for name in self._features[kind])

    def object_count(self) -> int:
        """Length of the numeric arrays (0 if the table has none)."""
        lengths = [len(v) for k in NUMERIC_KINDS for v in self._features[k].values()]
        return max(lengths) if lengths else 0

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        return sum(len(m) for m in self._features.values())

    # ------------------------------------------------------------------
    # Equality
    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if other is self:
            return True
        if not isinstance(other, MeasurementTable):
            return NotImplemented
        if self._features[STRING] != other._features[STRING]:
            return False
        for kind in NUMERIC_KINDS:
            mine, theirs = self._features[kind], other._features[kind]
            if mine.keys() != theirs.keys():
                return False
            for name, values in mine.items():
                if canonical_bytes(values) != canonical_bytes(theirs[name]):  # type: ignore[arg-type]
                    return False
        return True

    def __hash__(self) -> int:
        items = frozenset(
            (kind, name, values if kind == STRING else canonical_bytes(values))  # type: ignore[arg-type]
            for kind in VALUE_KINDS
            for name, values in self._features[kind].items()
        )
        return hash(items)

    def __str__(self) -> str:
        return str(self.feature_names())

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={len(self._features[k])}" for k in VALUE_KINDS)
        return f"MeasurementTable({counts})"

    # ------------------------------------------------------------------
    # Binary encoding
    # ------------------------------------------------------------------

    def write_to(self, stream: BinaryIO) -> None:
        for kind in NUMERIC_KINDS:
            entries = self._features[kind]
            stream.write(_COUNT.pack(len(entries)))
            for name, values in entries.items():
                write_str(stream, name)
                stream.write(_COUNT.pack(len(values)))
                stream.write(np.asarray(values).astype(_WIRE_DTYPES[kind]).tobytes())
        strings = self._features[STRING]
        stream.write(_COUNT.pack(len(strings)))
        for name, value in strings.items():
            write_str(stream, name)
            write_str(stream, value)  # type: ignore[arg-type]

    def encode(self) -> bytes:
        buf = io.BytesIO()
        self.write_to(buf)
        return buf.getvalue()

    @classmethod
    def read_from(cls, stream: BinaryIO) -> "MeasurementTable":
        table = cls()
        for kind in NUMERIC_KINDS:
            for _ in range(read_count(stream)):
                name = read_str(stream)
                n = read_count(stream)
                wire = _WIRE_DTYPES[kind]
                raw = read_exact(stream, n * wire.itemsize)
                values = np.frombuffer(raw, dtype=wire, count=n) if n else np.zeros(0, dtype=wire)
                table._features[kind][name] = as_feature_array(kind, values)
        for _ in range(read_count(stream)):
            name = read_str(stream)
            table._features[STRING][name] = read_str(stream)
        return table.freeze()

    @classmethod
    def decode(cls, data: bytes) -> "MeasurementTable":
        stream = io.BytesIO(data)
        table = cls.read_from(stream)
        trailing = len(data) - stream.tell()
        if trailing:
            raise SerializationError(f"{trailing} trailing byte(s) after measurement table")
        return table


# ---------------------------------------------------------------------------
# Primitive readers / writers (shared with AnalysisResult)
# ---------------------------------------------------------------------------

def write_str(stream: BinaryIO, text: str) -> None:
    data = text.encode("utf-8")
    if len(data) > _MAX_STR:
        raise SerializationError(f"String of {len(data)} bytes exceeds the {_MAX_STR}-byte limit")
    stream.write(_STRLEN.pack(len(data)))
    stream.write(data)


def read_exact(stream: BinaryIO, n: int) -> bytes:
    data = stream.read(n)
    if data is None or len(data) != n:
        got = 0 if data is None else len(data)
        raise SerializationError(f"Truncated measurement data: expected {n} bytes, got {got}")
    return data


def read_count(stream: BinaryIO) -> int:
    (n,) = _COUNT.unpack(read_exact(stream, _COUNT.size))
    if n < 0:
        raise SerializationError(f"Negative count {n} in measurement data")
    return n


def read_str(stream: BinaryIO) -> str:
    (n,) = _STRLEN.unpack(read_exact(stream, _STRLEN.size))
    try:
        return read_exact(stream, n).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SerializationError(f"Invalid UTF-8 in measurement data: {exc}") from exc


