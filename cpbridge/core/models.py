"""
core/models.py
--------------
Central data-transfer objects (dataclasses) used between the row source,
the row processor and the output side. Measurement containers live in
:mod:`cpbridge.measurements`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import numpy as np


# ---------------------------------------------------------------------------
# Configuration-derived
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelBinding:
    """Pairs a pipeline input channel with a column of the input row."""

    channel: str
    """Logical channel name expected by the pipeline (e.g. ``DNA``)."""

    column: str
    """Column identifier in the input row holding the image."""

    @classmethod
    def from_config(cls, cfg: Any) -> "ChannelBinding":
        return cls(channel=cfg.channel, column=cfg.column)


# ---------------------------------------------------------------------------
# Ingestion layer
# ---------------------------------------------------------------------------

@dataclass
class Row:
    """One input row as delivered by a RowProvider."""

    key: str
    """Unique row identifier (carried into the AnalysisResult)."""

    cells: Mapping[str, Any]
    """Column name -> cell value. Image cells are numpy arrays."""

    source: str = ""
    """Human-readable source identifier (manifest path, table name, …)."""

    def image(self, column: str) -> Optional[np.ndarray]:
        """Return the image cell of *column*, or None if absent."""
        value = self.cells.get(column)
        return value if isinstance(value, np.ndarray) else None


# ---------------------------------------------------------------------------
# Row runner
# ---------------------------------------------------------------------------

@dataclass
class RowOutcome:
    """Result of processing one row: either a record or an error."""

    row_key: str
    record: Optional[dict[str, Any]] = field(default=None, repr=False)
    """Output column name -> MeasurementTable."""

    result: Any = field(default=None, repr=False)
    """The row's AnalysisResult (None on failure)."""

    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None
