"""
measurements/result.py
----------------------
AnalysisResult: every result table produced for one processed row.
"""

from __future__ import annotations

import io
import logging
import struct
from collections.abc import Mapping
from types import MappingProxyType
from typing import BinaryIO, Iterator, Optional

from cpbridge.core.exceptions import SerializationError
from cpbridge.measurements.features import FeatureValueSet
from cpbridge.measurements.table import (
    MeasurementTable,
    read_count,
    read_str,
    write_str,
)

logger = logging.getLogger(__name__)

IMAGE_TABLE = "Image"
"""Name of the whole-image result table."""

_COUNT = struct.Struct(">i")


class AnalysisResult(Mapping):
    """Read-only mapping of result-table name -> :class:`MeasurementTable`.

    Tables keep the order in which the worker declared them.
    """

    def __init__(self, row_key: str, tables: Mapping[str, MeasurementTable]) -> None:
        self._row_key = row_key
        self._tables = MappingProxyType({name: t.freeze() for name, t in tables.items()})

    @property
    def row_key(self) -> str:
        return self._row_key

    # Mapping protocol ---------------------------------------------------

    def __getitem__(self, name: str) -> MeasurementTable:
        return self._tables[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tables)

    def __len__(self) -> int:
        return len(self._tables)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AnalysisResult):
            return NotImplemented
        return self._row_key == other._row_key and dict(self._tables) == dict(other._tables)

    def __hash__(self) -> int:
        return hash((self._row_key, frozenset(self._tables.items())))

    def __repr__(self) -> str:
        return f"AnalysisResult(row_key={self._row_key!r}, tables={list(self._tables)})"

    # Views --------------------------------------------------------------

    @property
    def image_table(self) -> Optional[MeasurementTable]:
        return self._tables.get(IMAGE_TABLE)

    @property
    def object_tables(self) -> dict[str, MeasurementTable]:
        return {n: t for n, t in self._tables.items() if n != IMAGE_TABLE}

    def merged(self) -> MeasurementTable:
        """Fold every table into one, naming features ``<table>_<feature>``.

        Names can collide (table ``A_B`` feature ``C`` and table ``A``
        feature ``B_C``); later ones get a `` (#n)`` suffix instead of
        replacing the earlier values.
        """
        merged = MeasurementTable()
        for table_name, table in self._tables.items():
            for f in table.features():
                base = f"{table_name}_{f.name}"
                name, n = base, 0
                while merged.get(f.kind, name) is not None:
                    n += 1
                    name = f"{base} (#{n})"
                if n:
                    logger.warning("Merged feature '%s' already taken; storing as '%s'", base, name)
                merged.add(FeatureValueSet(f.kind, name, f.values))
        return merged.freeze()

    # Binary encoding ----------------------------------------------------

    def write_to(self, stream: BinaryIO) -> None:
        write_str(stream, self._row_key)
        stream.write(_COUNT.pack(len(self._tables)))
        for name, table in self._tables.items():
            write_str(stream, name)
            table.write_to(stream)

    def encode(self) -> bytes:
        buf = io.BytesIO()
        self.write_to(buf)
        return buf.getvalue()

    @classmethod
    def read_from(cls, stream: BinaryIO) -> "AnalysisResult":
        row_key = read_str(stream)
        tables: dict[str, MeasurementTable] = {}
        for _ in range(read_count(stream)):
            name = read_str(stream)
            tables[name] = MeasurementTable.read_from(stream)
        return cls(row_key, tables)

    @classmethod
    def decode(cls, data: bytes) -> "AnalysisResult":
        stream = io.BytesIO(data)
        result = cls.read_from(stream)
        if stream.tell() != len(data):
            raise SerializationError(f"{len(data) - stream.tell()} trailing byte(s) after analysis result")
        return result
