"""
ingestion/base.py
-----------------
Abstract base class for all row providers.

Concrete implementations (ManifestRowProvider, …) must implement
``next_row()`` and the open/close lifecycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterator

from cpbridge.core.models import Row


class RowProvider(ABC):
    """Interface contract for anything that yields :class:`Row` objects."""

    @abstractmethod
    def open(self) -> None:
        """Open the source. Called once before iteration."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the provider."""

    @abstractmethod
    def next_row(self) -> Row | None:
        """Return the next :class:`Row`, or ``None`` when the source is exhausted."""

    def rows(self) -> Iterator[Row]:
        while True:
            row = self.next_row()
            if row is None:
                return
            yield row

    def __enter__(self) -> "RowProvider":
        self.open()
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    @property
    def columns(self) -> list[str]:
        """Input column names, used to keep output column names distinct."""
        return []

    @property
    def row_count(self) -> int:
        """Total row count if known, else -1."""
        return -1

    @property
    def source_id(self) -> str:
        return ""
