"""
ingestion/manifest.py
---------------------
RowProvider for a CSV manifest: one row per line, a key column plus columns
holding image file paths.

    key,dna,protein
    A01,images/A01_dna.tif,images/A01_protein.tif
    A02,images/A02_dna.tif,images/A02_protein.tif

Relative image paths are resolved against the manifest's directory.

Images are read with OpenCV (``cv2.imreadmulti``, unchanged bit depth).
Single-page files give 2-D arrays; multi-page files give a (pages, H, W)
stack. Colour pages are converted to grayscale. ``.npy`` files are loaded
with numpy as-is.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import IO, Optional, Sequence

import cv2
import numpy as np

from cpbridge.core.exceptions import IngestionError
from cpbridge.core.models import Row
from cpbridge.ingestion.base import RowProvider

logger = logging.getLogger(__name__)


def load_image(path: str | Path) -> np.ndarray:
    """Read one image file into a numpy array.

    Raises:
        IngestionError: The file is missing or cannot be decoded.
    """
    p = Path(path)
    if not p.is_file():
        raise IngestionError(f"Image file not found: {p}")

    if p.suffix.lower() == ".npy":
        try:
            return np.load(p, allow_pickle=False)
        except (OSError, ValueError) as exc:
            raise IngestionError(f"Could not load array file {p}: {exc}") from exc

    ok, pages = cv2.imreadmulti(str(p), flags=cv2.IMREAD_UNCHANGED)
    if not ok or not pages:
        raise IngestionError(f"OpenCV could not read image: {p}")

    planes = [_to_gray(page) for page in pages]
    if len(planes) == 1:
        return planes[0]
    if len({plane.shape for plane in planes}) != 1:
        raise IngestionError(f"Pages of {p} differ in size")
    return np.stack(planes)


def _to_gray(page: np.ndarray) -> np.ndarray:
    if page.ndim == 2:
        return page
    if page.ndim == 3 and page.shape[2] == 4:
        return cv2.cvtColor(page, cv2.COLOR_BGRA2GRAY)
    if page.ndim == 3 and page.shape[2] == 3:
        return cv2.cvtColor(page, cv2.COLOR_BGR2GRAY)
    if page.ndim == 3 and page.shape[2] == 1:
        return page[:, :, 0]
    raise IngestionError(f"Unsupported image page shape {page.shape}")


class ManifestRowProvider(RowProvider):
    """Yields one :class:`Row` per manifest line, with image cells loaded."""

    def __init__(
        self,
        path: str | Path,
        key_column: str = "key",
        image_columns: Optional[Sequence[str]] = None,
        max_rows: int = -1,
    ) -> None:
        """
        Args:
            path:          CSV manifest file.
            key_column:    Column holding the unique row key.
            image_columns: Columns holding image paths. ``None`` treats every
                           column except the key as an image column.
            max_rows:      Stop after this many rows (-1 = all).
        """
        self._path = Path(path)
        self._key_column = key_column
        self._image_columns = list(image_columns) if image_columns is not None else None
        self._max_rows = max_rows

        self._file: Optional[IO[str]] = None
        self._reader: Optional[csv.DictReader] = None
        self._columns: list[str] = []
        self._row_count = -1
        self._yielded = 0
        self._seen_keys: set[str] = set()

    # ------------------------------------------------------------------
    # RowProvider implementation
    # ------------------------------------------------------------------

    def open(self) -> None:
        if not self._path.is_file():
            raise IngestionError(f"Manifest not found: {self._path}")

        with open(self._path, newline="", encoding="utf-8") as f:
            self._row_count = max(sum(1 for _ in csv.reader(f)) - 1, 0)

        self._file = open(self._path, newline="", encoding="utf-8")
        self._reader = csv.DictReader(self._file)
        self._columns = list(self._reader.fieldnames or [])

        if self._key_column not in self._columns:
            self.close()
            raise IngestionError(f"Manifest {self._path} has no key column '{self._key_column}'")
        if self._image_columns is None:
            self._image_columns = [c for c in self._columns if c != self._key_column]
        missing = [c for c in self._image_columns if c not in self._columns]
        if missing:
            self.close()
            raise IngestionError(f"Manifest {self._path} has no column(s) {missing}")

        logger.info(
            "Opened manifest: %s | %d row(s) | image columns %s",
            self._path.name, self._row_count, self._image_columns,
        )

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._reader = None
            logger.debug("ManifestRowProvider closed: %s", self._path.name)

    def next_row(self) -> Row | None:
        if self._reader is None:
            raise IngestionError("Provider not opened. Call open() first.")
        if 0 <= self._max_rows <= self._yielded:
            return None

        try:
            line = next(self._reader)
        except StopIteration:
            return None
        except csv.Error as exc:
            raise IngestionError(f"{self._path}:{self._reader.line_num}: {exc}") from exc

        key = (line.get(self._key_column) or "").strip()
        if not key:
            raise IngestionError(f"{self._path}:{self._reader.line_num}: empty row key")
        if key in self._seen_keys:
            raise IngestionError(f"{self._path}:{self._reader.line_num}: duplicate row key '{key}'")
        self._seen_keys.add(key)

        cells: dict[str, object] = dict(line)
        for column in self._image_columns or []:
            ref = (line.get(column) or "").strip()
            if not ref:
                # Left empty; the processor reports the missing image for this row
                continue
            image_path = Path(ref)
            if not image_path.is_absolute():
                image_path = self._path.parent / image_path
            cells[column] = load_image(image_path)

        self._yielded += 1
        return Row(key=key, cells=cells, source=str(self._path))

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    @property
    def row_count(self) -> int:
        if self._row_count < 0 or self._max_rows < 0:
            return self._row_count
        return min(self._row_count, self._max_rows)

    @property
    def source_id(self) -> str:
        return str(self._path)
