"""
processing/row_processor.py
---------------------------
RowProcessor: turns one input row into one output record.

  Row
    → bound channel images       (ChannelBinding: channel ← column)
    → ImageNormalizer            → float32 in [0, 1]
    → BridgeSession.run / run_group
    → MeasurementTable per result table
    → AnalysisResult + output record (column name → MeasurementTable)

A row with any image of more than two dimensions is analysed as a group
(``run_group``); otherwise each channel is a flat image (``run``).
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import numpy as np

from cpbridge.bridge.session import BridgeSession
from cpbridge.core.config import OutputConfig
from cpbridge.core.exceptions import ConfigurationError, ImageFormatError
from cpbridge.core.models import ChannelBinding, Row
from cpbridge.measurements.features import FeatureValueSet
from cpbridge.measurements.result import AnalysisResult
from cpbridge.measurements.table import MeasurementTable
from cpbridge.processing.columns import OutputColumns
from cpbridge.processing.normalize import ImageNormalizer

logger = logging.getLogger(__name__)


class RowProcessor:
    """Per-row processing chain on top of a pipeline-loaded session."""

    def __init__(
        self,
        session: BridgeSession,
        bindings: Sequence[ChannelBinding],
        output: Optional[OutputConfig] = None,
        input_columns: Iterable[str] = (),
        normalizer: Optional[ImageNormalizer] = None,
    ) -> None:
        self._session = session
        self._bindings = list(bindings)
        self._output = output or OutputConfig()
        self._normalizer = normalizer or ImageNormalizer()

        required = session.list_input_channels()
        bound = {b.channel for b in self._bindings}
        unbound = [c for c in required if c not in bound]
        if unbound:
            raise ConfigurationError(f"No input column bound to pipeline channel(s) {unbound}")
        unused = sorted(bound - set(required))
        if unused:
            logger.warning("Ignoring bindings for channel(s) the pipeline does not use: %s", unused)
            self._bindings = [b for b in self._bindings if b.channel in required]

        self._tables = session.list_result_tables()
        self._columns = OutputColumns(
            self._tables,
            existing_columns=input_columns,
            prefix=self._output.column_prefix,
            group_by_table=self._output.group_by_table,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyse(self, row: Row) -> AnalysisResult:
        """Run the pipeline on *row* and collect every result table."""
        images = self._collect_images(row)
        if any(img.ndim > 2 for img in images.values()):
            logger.debug("Row '%s': analysing %d channel stack(s) as a group", row.key, len(images))
            self._session.run_group(images)
        else:
            self._session.run(images)

        tables: dict[str, MeasurementTable] = {}
        for table_name in self._tables:
            table = MeasurementTable()
            for desc in self._session.list_features(table_name):
                values = self._session.get_measurements(table_name, desc)
                table.add(FeatureValueSet(desc.kind, desc.name, values))
            tables[table_name] = table.freeze()
        return AnalysisResult(row.key, tables)

    def process(self, row: Row) -> tuple[dict[str, MeasurementTable], AnalysisResult]:
        """Process one row.

        Returns:
            ``(record, result)``: the output record mapping column name to
            :class:`MeasurementTable`, and the full :class:`AnalysisResult`.
        """
        result = self.analyse(row)
        if self._columns.group_by_table:
            record = {self._columns.column_for(name): table for name, table in result.items()}
        else:
            record = {self._columns.merged_column: result.merged()}
        return record, result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _collect_images(self, row: Row) -> dict[str, np.ndarray]:
        images: dict[str, np.ndarray] = {}
        for binding in self._bindings:
            image = row.image(binding.column)
            if image is None:
                raise ImageFormatError(
                    f"Row '{row.key}': column '{binding.column}' holds no image "
                    f"for channel '{binding.channel}'"
                )
            if image.ndim < 2:
                raise ImageFormatError(
                    f"Row '{row.key}': image in column '{binding.column}' has shape "
                    f"{image.shape}; at least two dimensions are required"
                )
            images[binding.channel] = self._normalizer(image)
        return images

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def columns(self) -> OutputColumns:
        return self._columns

    @property
    def result_tables(self) -> list[str]:
        return list(self._tables)

    @property
    def bindings(self) -> list[ChannelBinding]:
        return list(self._bindings)
