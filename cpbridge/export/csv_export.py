"""
export/csv_export.py
--------------------
Result export: reads a results file and writes:
  * ``<stem>_<table>.csv``: one file per result table, one line per object
  * ``<stem>_summary.json``: rows, tables, object counts and feature kinds

Can be called programmatically or via ``cpbridge export``.
"""

from __future__ import annotations

import csv
import json
import logging
import re
from pathlib import Path
from typing import Any

import numpy as np

from cpbridge.export.result_file import read_results
from cpbridge.measurements.features import STRING
from cpbridge.measurements.result import AnalysisResult

logger = logging.getLogger(__name__)


def _safe_name(table: str) -> str:
    return re.sub(r"[^\w.-]+", "_", table).strip("_") or "table"


def _cell(values: Any, index: int) -> Any:
    if isinstance(values, str):
        return values
    if index >= len(values):
        return ""
    return np.asarray(values)[index].item()


class ResultExporter:
    """Generates export artefacts from a results file."""

    def __init__(self, results_path: str | Path) -> None:
        self._path = Path(results_path)
        if not self._path.exists():
            raise FileNotFoundError(f"Results file not found: {self._path}")
        self._results: list[AnalysisResult] = read_results(self._path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def table_names(self) -> list[str]:
        """Every table name in first-seen order."""
        names: dict[str, None] = {}
        for result in self._results:
            for name in result:
                names.setdefault(name)
        return list(names)

    def export_csv(self, out_dir: str | Path | None = None) -> list[Path]:
        """Write one CSV per result table.

        Numeric features give one value per line (blank past the end of a
        shorter array); string features repeat on every line of the row.
        Returns: paths of the written files.
        """
        target = Path(out_dir) if out_dir else self._path.parent
        target.mkdir(parents=True, exist_ok=True)

        written: list[Path] = []
        for table_name in self.table_names():
            features: dict[str, None] = {}
            for result in self._results:
                if table_name in result:
                    for f in result[table_name].features():
                        features.setdefault(f.name)
            columns = list(features)

            out = target / f"{self._path.stem}_{_safe_name(table_name)}.csv"
            lines = 0
            with open(out, "w", newline="", encoding="utf-8") as fh:
                writer = csv.writer(fh)
                writer.writerow(["row_key", "object_index", *columns])
                for result in self._results:
                    if table_name not in result:
                        continue
                    table = result[table_name]
                    by_name = {f.name: f.values for f in table.features()}
                    n = table.object_count()
                    if n == 0 and table.names(STRING):
                        n = 1
                    for i in range(n):
                        writer.writerow(
                            [result.row_key, i, *(_cell(by_name[c], i) if c in by_name else "" for c in columns)]
                        )
                        lines += 1
            logger.info("Exported %d line(s) of table '%s' to %s", lines, table_name, out)
            written.append(out)
        return written

    def export_summary_json(self, output_path: str | Path | None = None) -> Path:
        """Export per-table statistics to JSON.

        Returns: path to the written JSON file.
        """
        out = Path(output_path) if output_path else self._path.parent / (self._path.stem + "_summary.json")

        tables: dict[str, Any] = {}
        for table_name in self.table_names():
            counts = [r[table_name].object_count() for r in self._results if table_name in r]
            kinds: dict[str, str] = {}
            for result in self._results:
                if table_name in result:
                    for f in result[table_name].features():
                        kinds.setdefault(f.name, f.kind)
            tables[table_name] = {
                "rows": len(counts),
                "objects_total": int(sum(counts)),
                "objects_per_row": {
                    "min": min(counts),
                    "max": max(counts),
                    "mean": round(sum(counts) / len(counts), 3),
                },
                "features": kinds,
            }

        summary: dict[str, Any] = {
            "source": str(self._path),
            "rows": len(self._results),
            "row_keys": [r.row_key for r in self._results],
            "tables": tables,
        }
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        logger.info("Summary JSON written to %s", out)
        return out

    def export_all(self, out_dir: str | Path | None = None) -> tuple[list[Path], Path]:
        """Run both exports. Returns (csv_paths, json_path)."""
        csv_paths = self.export_csv(out_dir)
        json_path = self.export_summary_json(
            Path(out_dir) / (self._path.stem + "_summary.json") if out_dir else None
        )
        return csv_paths, json_path

    @property
    def results(self) -> list[AnalysisResult]:
        return list(self._results)
