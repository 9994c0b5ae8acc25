"""
export/result_file.py
---------------------
Binary results file: the AnalysisResult of every processed row, in order.

Layout (big-endian)::

    4 bytes   magic  b"CPBR"
    uint16    format version
    repeated: uint32 record_len, record_len bytes of AnalysisResult.encode()

The writer flushes after every record, so a file cut short by a crash still
reads back up to the last complete row.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from cpbridge.core.exceptions import SerializationError
from cpbridge.measurements.result import AnalysisResult

logger = logging.getLogger(__name__)

MAGIC = b"CPBR"
FORMAT_VERSION = 1

_HEADER = struct.Struct(">4sH")
_RECORD_LEN = struct.Struct(">I")


class ResultFileWriter:
    """Appends AnalysisResults to a new results file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file: Optional[BinaryIO] = open(self._path, "wb")
        self._file.write(_HEADER.pack(MAGIC, FORMAT_VERSION))
        self._count = 0
        logger.info("Results file opened: %s", self._path)

    def write(self, result: AnalysisResult) -> None:
        if self._file is None:
            raise ValueError(f"Results file {self._path} is closed")
        record = result.encode()
        self._file.write(_RECORD_LEN.pack(len(record)))
        self._file.write(record)
        self._file.flush()
        self._count += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            logger.info("Results file closed: %s (%d row(s))", self._path, self._count)

    def __enter__(self) -> "ResultFileWriter":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def count(self) -> int:
        return self._count


def iter_results(path: str | Path) -> Iterator[AnalysisResult]:
    """Yield the results stored in *path*, in file order.

    Raises:
        FileNotFoundError:  *path* does not exist.
        SerializationError: Bad header, unsupported version or a corrupt record.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Results file not found: {p}")

    with open(p, "rb") as f:
        header = f.read(_HEADER.size)
        if len(header) != _HEADER.size:
            raise SerializationError(f"{p} is too short to be a results file")
        magic, version = _HEADER.unpack(header)
        if magic != MAGIC:
            raise SerializationError(f"{p} is not a results file (magic {magic!r})")
        if version != FORMAT_VERSION:
            raise SerializationError(f"{p}: unsupported results format version {version}")

        index = 0
        while True:
            prefix = f.read(_RECORD_LEN.size)
            if not prefix:
                return
            if len(prefix) != _RECORD_LEN.size:
                raise SerializationError(f"{p}: truncated record header at record {index}")
            (length,) = _RECORD_LEN.unpack(prefix)
            record = f.read(length)
            if len(record) != length:
                raise SerializationError(f"{p}: record {index} truncated ({len(record)}/{length} bytes)")
            yield AnalysisResult.decode(record)
            index += 1


def read_results(path: str | Path) -> list[AnalysisResult]:
    return list(iter_results(path))
