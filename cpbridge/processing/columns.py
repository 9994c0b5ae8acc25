"""
processing/columns.py
---------------------
Output column naming for processed rows.

Grouped by table (default)::

    Measurements: [Image]   Measurements: [Nuclei]   ...

Ungrouped: a single ``Measurements`` column holding the merged table.
Names that collide with existing input columns get a ``(#n)`` suffix.
"""

from __future__ import annotations

from typing import Iterable, Sequence


def unique_column_name(name: str, taken: Iterable[str]) -> str:
    """Return *name*, or ``name (#1)``, ``name (#2)`` ... if already taken."""
    taken = set(taken)
    if name not in taken:
        return name
    n = 1
    while f"{name} (#{n})" in taken:
        n += 1
    return f"{name} (#{n})"


class OutputColumns:
    """Maps result tables to output column names for one pipeline."""

    def __init__(
        self,
        result_tables: Sequence[str],
        existing_columns: Iterable[str] = (),
        prefix: str = "Measurements",
        group_by_table: bool = True,
    ) -> None:
        self._group = group_by_table
        self._prefix = prefix
        taken = set(existing_columns)

        self._by_table: dict[str, str] = {}
        if group_by_table:
            for table in result_tables:
                column = unique_column_name(f"{prefix}: [{table}]", taken)
                taken.add(column)
                self._by_table[table] = column
            self._merged = ""
        else:
            self._merged = unique_column_name(prefix, taken)

    @property
    def group_by_table(self) -> bool:
        return self._group

    @property
    def names(self) -> list[str]:
        """Output column names in order."""
        return list(self._by_table.values()) if self._group else [self._merged]

    def column_for(self, table: str) -> str:
        """Column holding *table* (the merged column when ungrouped)."""
        if not self._group:
            return self._merged
        try:
            return self._by_table[table]
        except KeyError:
            raise KeyError(f"No output column for result table '{table}'") from None

    @property
    def merged_column(self) -> str:
        if self._group:
            raise ValueError("Output is grouped by table; there is no merged column")
        return self._merged
