"""
bridge/session.py
-----------------
BridgeSession: owns one worker process and its protocol connection.

Lifecycle::

    not-connected --start()--> connected --load_pipeline()--> pipeline-loaded
        --run()/run_group()--> ready --close()--> closed

``close()`` is reachable from every state, idempotent and never raises.
Use the session as a context manager so the worker is always released::

    with BridgeSession.start(cfg.worker) as session:
        session.load_pipeline_file("analysis.cppipe")
        session.run({"DNA": dna, "Protein": protein})
        area = session.get_measurements("Nuclei", "AreaShape_Area")

One session serves one caller at a time; an internal lock guarantees at most
one outstanding request on the connection.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import threading
from pathlib import Path
from typing import Mapping, Optional, Union

import numpy as np

from cpbridge.bridge.protocol import BridgeClient, PipelineInfo, RunReply
from cpbridge.bridge.stream_listener import StreamListener
from cpbridge.core.config import WorkerConfig
from cpbridge.core.exceptions import (
    ConfigurationError,
    ImageFormatError,
    ProtocolError,
    ResourceError,
    SessionStateError,
)
from cpbridge.measurements.features import FeatureDescription, FeatureValues

logger = logging.getLogger(__name__)

NOT_CONNECTED = "not-connected"
CONNECTED = "connected"
PIPELINE_LOADED = "pipeline-loaded"
READY = "ready"
CLOSED = "closed"

_POSIX = os.name == "posix"


def find_free_port(host: str = "127.0.0.1") -> int:
    """Bind a transient socket to port 0 and return the port the OS picked."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            return int(sock.getsockname()[1])
    except OSError as exc:
        raise ResourceError(f"Could not get a free port on {host}: {exc}") from exc


def validate_module_path(path: Union[str, Path, None]) -> Path:
    """Check that the worker entry module is set, exists and is a file."""
    if path is None or str(path) == "":
        raise ConfigurationError("Path to worker module not set")
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigurationError(f"Worker module {p} does not exist")
    if p.is_dir():
        raise ConfigurationError(f"Worker module path {p} is a directory")
    return p


class BridgeSession:
    """Client-side handle of one external analysis worker."""

    def __init__(self, config: WorkerConfig) -> None:
        self._cfg = config
        self._state = NOT_CONNECTED
        self._lock = threading.Lock()

        self._process: Optional[subprocess.Popen] = None
        self._listeners: list[StreamListener] = []
        self._client: Optional[BridgeClient] = None
        self._address = ""

        self._pipeline: Optional[bytes] = None
        self._info: Optional[PipelineInfo] = None
        self._last_run: Optional[RunReply] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    @classmethod
    def start(
        cls,
        config: WorkerConfig,
        module_path: Union[str, Path, None] = None,
    ) -> "BridgeSession":
        """Launch the worker and connect to it.

        Args:
            config:      Worker settings.
            module_path: Worker entry script; defaults to ``config.module_path``.

        Raises:
            ConfigurationError:    Bad module path or the worker cannot be launched.
            ResourceError:         No free local port.
            BridgeConnectionError: The worker did not answer the handshake.
        """
        session = cls(config)
        session._launch(module_path if module_path is not None else config.module_path)
        return session

    def _launch(self, module_path: Union[str, Path, None]) -> None:
        if self._state != NOT_CONNECTED:
            raise SessionStateError(f"Cannot start a session in state '{self._state}'")
        module = validate_module_path(module_path)

        port = find_free_port(self._cfg.host)
        self._address = f"tcp://{self._cfg.host}:{port}"
        cmd = [
            self._cfg.python_executable,
            str(module),
            f"{self._cfg.address_flag}={self._address}",
            *self._cfg.extra_args,
        ]
        logger.info("Starting worker: %s", " ".join(cmd))
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            raise ConfigurationError(f"Could not launch worker '{cmd[0]}': {exc}") from exc

        self._listeners = [
            StreamListener(self._process.stdout, "stdout", _level(self._cfg.stdout_level)),  # type: ignore[arg-type]
            StreamListener(self._process.stderr, "stderr", _level(self._cfg.stderr_level)),  # type: ignore[arg-type]
        ]
        for listener in self._listeners:
            listener.start()

        try:
            self._client = BridgeClient(
                poll_interval_s=self._cfg.poll_interval_s,
                liveness=self._worker_exit_reason,
            )
            self._client.connect(self._address, timeout_s=self._cfg.connect_timeout_s)
        except BaseException:
            self.close()
            raise
        self._state = CONNECTED
        logger.info("Worker pid %d connected on %s", self._process.pid, self._address)

    def _worker_exit_reason(self) -> Optional[str]:
        if self._process is not None and self._process.poll() is not None:
            return f"Worker process exited with code {self._process.returncode}"
        return None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def load_pipeline(self, definition: Union[bytes, str]) -> None:
        """Hand the pipeline definition to the worker.

        Raises:
            PipelineError: The worker rejected the definition.
        """
        self._require(CONNECTED, action="load a pipeline")
        data = definition.encode("utf-8") if isinstance(definition, str) else bytes(definition)
        timeout = self._cfg.response_timeout_s
        with self._lock:
            self._require(CONNECTED, action="load a pipeline")
            info = self._client.pipeline_info(data, timeout_s=timeout)  # type: ignore[union-attr]
            cleaned = self._client.clean_pipeline(data, timeout_s=timeout)  # type: ignore[union-attr]
            self._info = info
            self._pipeline = cleaned
            # close() may have started while the reply was in flight
            if self._state != CLOSED:
                self._state = PIPELINE_LOADED
        logger.info(
            "Pipeline loaded: channels=%s result tables=%s", info.channels, info.result_tables
        )

    def load_pipeline_file(self, path: Union[str, Path]) -> None:
        p = Path(path).expanduser()
        if not p.exists():
            raise ConfigurationError(f"Pipeline file {p} does not exist")
        if p.is_dir():
            raise ConfigurationError(f"Pipeline path {p} is a directory")
        self.load_pipeline(p.read_bytes())

    def list_input_channels(self) -> list[str]:
        self._require(PIPELINE_LOADED, READY, action="list input channels")
        return list(self._info.channels)  # type: ignore[union-attr]

    def list_result_tables(self) -> list[str]:
        self._require(PIPELINE_LOADED, READY, action="list result tables")
        return list(self._info.result_tables)  # type: ignore[union-attr]

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run(self, images: Mapping[str, np.ndarray]) -> None:
        """Analyse one set of flat (2-D) channel images; blocks until done."""
        self._run(images, group=False)

    def run_group(self, images: Mapping[str, np.ndarray]) -> None:
        """Analyse N-D channel stacks as one group; blocks until done."""
        self._run(images, group=True)

    def _run(self, images: Mapping[str, np.ndarray], group: bool) -> None:
        self._require(PIPELINE_LOADED, READY, action="run the pipeline")
        channels = self._info.channels  # type: ignore[union-attr]

        missing = [c for c in channels if c not in images]
        if missing:
            raise ProtocolError(f"No image supplied for channel(s) {missing}")
        extra = sorted(set(images) - set(channels))
        if extra:
            logger.debug("Ignoring images for undeclared channel(s) %s", extra)

        ordered = {c: np.asarray(images[c]) for c in channels}
        for channel, pixels in ordered.items():
            if not group and pixels.ndim != 2:
                raise ImageFormatError(
                    f"run() needs 2-D images; channel '{channel}' has shape {pixels.shape} (use run_group)"
                )
            if group and pixels.ndim < 2:
                raise ImageFormatError(f"Channel '{channel}' has shape {pixels.shape}")

        self._last_run = None
        with self._lock:
            self._require(PIPELINE_LOADED, READY, action="run the pipeline")
            reply = self._client.run(  # type: ignore[union-attr]
                self._pipeline,  # type: ignore[arg-type]
                ordered,
                group=group,
                timeout_s=self._cfg.response_timeout_s,
            )
            self._last_run = reply
            if self._state != CLOSED:
                self._state = READY
        logger.debug(
            "%s finished: %s",
            "run_group" if group else "run",
            {t: reply.object_count(t) for t in reply.features},
        )

    # ------------------------------------------------------------------
    # Results of the most recent run
    # ------------------------------------------------------------------

    def list_features(self, table: str) -> list[FeatureDescription]:
        reply = self._require_run()
        if table in reply.features:
            return list(reply.features[table])
        if table in self._info.result_tables:  # type: ignore[union-attr]
            return []
        raise KeyError(f"Unknown result table '{table}'")

    def get_measurements(self, table: str, feature: Union[str, FeatureDescription]) -> FeatureValues:
        """Values of one feature: a numpy array for numeric kinds, a str for strings."""
        reply = self._require_run()
        if isinstance(feature, FeatureDescription):
            key = (feature.table, feature.kind, feature.name)
            if key not in reply.values:
                raise KeyError(f"No feature '{feature.name}' ({feature.kind}) in table '{table}'")
            return reply.values[key]

        matches = [d for d in reply.features.get(table, []) if d.name == feature]
        if not matches:
            raise KeyError(f"No feature '{feature}' in table '{table}'")
        if len(matches) > 1:
            raise KeyError(
                f"Feature '{feature}' exists as {[d.kind for d in matches]} in '{table}'; "
                "pass a FeatureDescription"
            )
        d = matches[0]
        return reply.values[(d.table, d.kind, d.name)]

    def object_count(self, table: str) -> int:
        """Per-object row count the worker reported for *table* in the last run."""
        return self._require_run().object_count(table)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Disconnect (best effort) and terminate the worker. Never raises."""
        if self._state == CLOSED:
            return
        self._state = CLOSED

        acquired = self._lock.acquire(blocking=False)
        if not acquired:
            # A request is in flight: kill the worker so it fails fast, then wait for the lock
            logger.warning("close() called during an in-flight request; terminating worker first")
            self._terminate_worker()
            acquired = self._lock.acquire(timeout=self._cfg.poll_interval_s * 4 + 1.0)
        try:
            if acquired:
                self._disconnect()
            else:
                logger.warning("In-flight request still holds the connection; skipping disconnect")
        finally:
            if acquired:
                self._lock.release()

        self._terminate_worker()
        for listener in self._listeners:
            listener.join(timeout=self._cfg.shutdown_timeout_s)
        self._close_pipes()
        logger.info("Session closed (%s)", self._address or "never connected")

    def _disconnect(self) -> None:
        if self._client is None:
            return
        try:
            self._client.disconnect()
        except Exception:
            logger.exception("Error while disconnecting from worker")

    def _terminate_worker(self) -> None:
        proc = self._process
        if proc is None:
            return
        if proc.poll() is None:
            try:
                self._signal_worker(kill=False)
                try:
                    proc.wait(timeout=self._cfg.shutdown_timeout_s)
                except subprocess.TimeoutExpired:
                    logger.warning("Worker pid %d ignored terminate; killing", proc.pid)
                    self._signal_worker(kill=True)
                    proc.wait(timeout=self._cfg.shutdown_timeout_s)
            except (OSError, subprocess.TimeoutExpired):
                logger.exception("Could not stop worker pid %d", proc.pid)
        if _POSIX:
            # Children the worker left behind still hold its stdout/stderr
            try:
                self._signal_worker(kill=True)
            except OSError:
                logger.exception("Could not stop processes left by worker pid %d", proc.pid)

    def _signal_worker(self, kill: bool) -> None:
        """Signal the worker and, on POSIX, every process in its session's group."""
        proc = self._process
        if proc is None:
            return
        if not _POSIX:
            if kill:
                proc.kill()
            else:
                proc.terminate()
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL if kill else signal.SIGTERM)
        except ProcessLookupError:
            pass

    def _close_pipes(self) -> None:
        for listener in self._listeners:
            if not listener.close_stream():
                logger.warning(
                    "Worker %s is still held open by another process; leaving it to its reader",
                    listener.name,
                )

    def __enter__(self) -> "BridgeSession":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _require(self, *states: str, action: str) -> None:
        if self._state not in states:
            if self._state == CLOSED:
                raise SessionStateError(f"Cannot {action}: session is closed")
            raise SessionStateError(
                f"Cannot {action}: session is not ready (state '{self._state}')"
            )

    def _require_run(self) -> RunReply:
        self._require(PIPELINE_LOADED, READY, action="read measurements")
        if self._last_run is None:
            raise SessionStateError("Cannot read measurements: no successful run yet")
        return self._last_run

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def address(self) -> str:
        return self._address

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def pipeline_info(self) -> Optional[PipelineInfo]:
        return self._info

    @property
    def broken(self) -> bool:
        """True once a timeout or transport failure has made the connection unusable."""
        return self._client is not None and self._client.broken


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)
