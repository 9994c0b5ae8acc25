"""
bridge/stream_listener.py
-------------------------
Background-thread drain for one of the worker's output streams.

The worker writes progress and diagnostics to stdout/stderr. If nobody reads
those pipes the OS buffer fills up and the worker blocks, so each stream gets
its own daemon thread that forwards every line to the ``cpbridge.worker``
logger until the stream closes.

Usage::

    proc = subprocess.Popen(cmd, stdout=PIPE, stderr=PIPE)
    out = StreamListener(proc.stdout, "stdout", logging.DEBUG)
    err = StreamListener(proc.stderr, "stderr", logging.WARNING)
    out.start(); err.start()
    # ... worker runs ...
    proc.terminate()        # closes the pipes, both threads exit
    out.join(); err.join()
    out.close_stream(); err.close_stream()
"""

from __future__ import annotations

import logging
import threading
from typing import IO, Optional

logger = logging.getLogger(__name__)

WORKER_LOGGER = "cpbridge.worker"


class StreamListener:
    """Forwards lines of a binary stream to a logger at a fixed level."""

    def __init__(
        self,
        stream: IO[bytes],
        name: str,
        level: int = logging.DEBUG,
        sink: Optional[logging.Logger] = None,
    ) -> None:
        self._stream = stream
        self._name = name
        self._level = level
        self._sink = sink or logging.getLogger(WORKER_LOGGER)
        self._thread: Optional[threading.Thread] = None
        self._lines = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background reader thread."""
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, name=f"StreamListener-{self._name}", daemon=True
        )
        self._thread.start()
        logger.debug("StreamListener %s started", self._name)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the reader to finish. Returns True if it has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("StreamListener %s: thread did not exit within %.1fs", self._name, timeout or 0)
            return False
        return True

    def close_stream(self) -> bool:
        """Close the stream once the reader has exited.

        A reader still blocked in ``readline()`` holds the buffer lock, so the
        stream is left to the daemon thread. Returns True if it was closed.
        """
        if self.is_alive:
            return False
        try:
            self._stream.close()
        except OSError:
            logger.debug("StreamListener %s: stream already closed", self._name)
        return True

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def line_count(self) -> int:
        return self._lines

    # ------------------------------------------------------------------
    # Background thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            for raw in iter(self._stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                self._lines += 1
                self._sink.log(self._level, "[%s] %s", self._name, line)
        except (OSError, ValueError):
            # The pipe is torn down when the worker is killed
            logger.debug("StreamListener %s: stream closed", self._name)
        logger.debug("StreamListener %s exiting after %d line(s)", self._name, self._lines)
