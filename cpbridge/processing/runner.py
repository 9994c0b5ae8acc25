"""
processing/runner.py
--------------------
RowRunner: drives a RowProcessor over a stream of rows.

Rows are processed strictly in order through the one session. A
``threading.Event`` can be set from another thread to stop at the next row
boundary; an in-flight row is only interrupted by closing the session.

Row failures are wrapped in :class:`RowError`. With ``on_row_error="fail"``
the first failure propagates; with ``"skip"`` it is logged, yielded as a
failed :class:`RowOutcome` and processing continues.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator, Optional

from cpbridge.core.exceptions import BridgeConnectionError, CPBridgeError, RowError
from cpbridge.core.models import Row, RowOutcome
from cpbridge.processing.row_processor import RowProcessor

logger = logging.getLogger(__name__)

FAIL = "fail"
SKIP = "skip"


class RowRunner:
    def __init__(
        self,
        processor: RowProcessor,
        on_row_error: str = FAIL,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if on_row_error not in (FAIL, SKIP):
            raise ValueError(f"on_row_error must be '{FAIL}' or '{SKIP}', got {on_row_error!r}")
        self._processor = processor
        self._on_row_error = on_row_error
        self._cancel = cancel_event or threading.Event()

        self.processed = 0
        self.failed = 0
        self.cancelled = False

    def cancel(self) -> None:
        """Request a stop before the next row."""
        self._cancel.set()

    def run(self, rows: Iterable[Row]) -> Iterator[RowOutcome]:
        """Process *rows*, yielding one :class:`RowOutcome` per attempted row.

        Raises:
            RowError: On the first failing row when ``on_row_error`` is ``fail``,
                      and always when the worker connection is lost.
        """
        for row in rows:
            if self._cancel.is_set():
                self.cancelled = True
                logger.info("Cancelled after %d row(s)", self.processed + self.failed)
                return
            try:
                record, result = self._processor.process(row)
            except CPBridgeError as exc:
                self.failed += 1
                error = RowError(row.key, exc)
                # A lost connection fails every following row too
                if self._on_row_error == FAIL or isinstance(exc, BridgeConnectionError):
                    raise error from exc
                logger.warning("%s; skipping", error)
                yield RowOutcome(row_key=row.key, error=error)
                continue
            self.processed += 1
            yield RowOutcome(row_key=row.key, record=record, result=result)

    @property
    def attempted(self) -> int:
        return self.processed + self.failed
