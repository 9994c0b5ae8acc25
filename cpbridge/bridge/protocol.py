"""
bridge/protocol.py
------------------
Client side of the worker request/response protocol.

Transport is a ZeroMQ REQ socket; every message is a multipart frame list::

    [session_id, b"", message_type, *body]

Requests and their replies
--------------------------
connect-request-1          -> connect-reply-1
pipeline-info-req-1        (pipeline)                     -> pipeline-info-reply-1 (json)
clean-pipeline-request-1   (pipeline)                     -> clean-pipeline-reply-1 (pipeline)
run-request-1              (pipeline, json, *float32 bufs) -> run-reply-1 (json, data)
run-group-request-1        (same, N-D images)             -> run-reply-1

Any request may instead be answered with ``cellprofiler-exception-1`` (the
analysis failed) or ``pipeline-exception-1`` (the pipeline was rejected),
each carrying a UTF-8 message.

Pipeline info body: ``[channels, type_names, {table: [[feature, type_index], ...]}]``.

Run reply metadata: ``[double, float, int, string]`` where each section is
``[[table, [[feature, count], ...]], ...]``. The data frame holds every
double (``<f8``), then float (``<f4``), then int (``<i4``) array, then each
string's UTF-8 bytes (count = byte length), in metadata order.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

import numpy as np
import zmq

from cpbridge.core.exceptions import (
    BridgeComputeError,
    BridgeConnectionError,
    ImageFormatError,
    PipelineError,
    ProtocolError,
)
from cpbridge.measurements.features import (
    DOUBLE,
    FLOAT,
    INT,
    KIND_DTYPES,
    NUMERIC_KINDS,
    STRING,
    VALUE_KINDS,
    FeatureDescription,
    FeatureValues,
)

logger = logging.getLogger(__name__)

CONNECT_REQ_1 = b"connect-request-1"
CONNECT_REPLY_1 = b"connect-reply-1"
PIPELINE_INFO_REQ_1 = b"pipeline-info-req-1"
PIPELINE_INFO_REPLY_1 = b"pipeline-info-reply-1"
CLEAN_PIPELINE_REQ_1 = b"clean-pipeline-request-1"
CLEAN_PIPELINE_REPLY_1 = b"clean-pipeline-reply-1"
RUN_REQ_1 = b"run-request-1"
RUN_GROUP_REQ_1 = b"run-group-request-1"
RUN_REPLY_1 = b"run-reply-1"
CELLPROFILER_EXCEPTION_1 = b"cellprofiler-exception-1"
PIPELINE_EXCEPTION_1 = b"pipeline-exception-1"

# Axis labels, aligned to the trailing (Y, X) plane
AXES = ("Channel", "T", "Z", "Y", "X")

PIXEL_DTYPE = np.dtype("<f4")

# Little-endian element types of the run reply data frame
REPLY_DTYPES = {
    DOUBLE: np.dtype("<f8"),
    FLOAT: np.dtype("<f4"),
    INT: np.dtype("<i4"),
}

_TYPE_NAMES = {
    "double": DOUBLE,
    "float": FLOAT,
    "int": INT,
    "integer": INT,
    "string": STRING,
}


# ---------------------------------------------------------------------------
# Reply models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineInfo:
    """What the worker reports about a loaded pipeline."""

    channels: list[str]
    result_tables: list[str]
    declared: dict[str, list[tuple[str, str]]] = field(default_factory=dict)
    """table -> [(feature, kind)] as declared before any run."""


@dataclass
class RunReply:
    """Features and values of one run, grouped by result table."""

    features: dict[str, list[FeatureDescription]] = field(default_factory=dict)
    values: dict[tuple[str, str, str], FeatureValues] = field(default_factory=dict)
    """(table, kind, feature) -> numpy array or str."""

    def object_count(self, table: str) -> int:
        counts = [d.count for d in self.features.get(table, []) if d.kind in NUMERIC_KINDS]
        return counts[0] if counts else 0


# ---------------------------------------------------------------------------
# Image encoding
# ---------------------------------------------------------------------------

def encode_image(pixels: np.ndarray) -> tuple[list[dict[str, Any]], bytes]:
    """Return (axis metadata, little-endian float32 C-order bytes) for *pixels*."""
    if pixels.ndim < 2 or pixels.ndim > len(AXES):
        raise ImageFormatError(
            f"Images must have 2 to {len(AXES)} dimensions, got shape {pixels.shape}"
        )
    data = np.ascontiguousarray(pixels, dtype=PIXEL_DTYPE)
    axes = AXES[-data.ndim:]
    metadata = [
        {"dimension": axis, "size": int(size), "stride": int(stride // PIXEL_DTYPE.itemsize)}
        for axis, size, stride in zip(axes, data.shape, data.strides)
    ]
    return metadata, data.tobytes()


def decode_image(metadata: list[dict[str, Any]], buf: bytes) -> np.ndarray:
    """Inverse of :func:`encode_image` (used by workers and tests)."""
    pixels = np.frombuffer(buf, dtype=PIXEL_DTYPE)
    shape = tuple(int(m["size"]) for m in metadata)
    strides = tuple(int(m["stride"]) * PIXEL_DTYPE.itemsize for m in metadata)
    expected = int(np.prod(shape)) if shape else 0
    if pixels.size != expected:
        raise ProtocolError(f"Image buffer holds {pixels.size} samples, metadata says {expected}")
    return np.lib.stride_tricks.as_strided(pixels, shape=shape, strides=strides).copy()


# ---------------------------------------------------------------------------
# Reply decoding
# ---------------------------------------------------------------------------

def _load_json(frame: bytes, what: str) -> Any:
    try:
        return json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"Malformed {what} JSON: {exc}") from exc


def parse_pipeline_info(body: list[bytes]) -> PipelineInfo:
    if len(body) != 1:
        raise ProtocolError(f"Pipeline info reply has {len(body)} body frame(s), expected 1")
    payload = _load_json(body[0], "pipeline info")
    try:
        channels, type_names, measurements = payload
        kinds = [_TYPE_NAMES[str(t).lower()] for t in type_names]
        declared = {
            str(table): [(str(name), kinds[int(idx)]) for name, idx in features]
            for table, features in measurements.items()
        }
        info = PipelineInfo(
            channels=[str(c) for c in channels],
            result_tables=list(declared),
            declared=declared,
        )
    except (TypeError, ValueError, KeyError, IndexError, AttributeError) as exc:
        raise ProtocolError(f"Unexpected pipeline info layout: {exc!r}") from exc
    return info


def parse_run_reply(body: list[bytes]) -> RunReply:
    if len(body) != 2:
        raise ProtocolError(f"Run reply has {len(body)} body frame(s), expected 2")
    metadata = _load_json(body[0], "run reply")
    data = body[1]
    if not isinstance(metadata, list) or len(metadata) != len(VALUE_KINDS):
        raise ProtocolError("Run reply metadata must list four feature sections")

    reply = RunReply()
    offset = 0
    try:
        for kind, section in zip(VALUE_KINDS, metadata):
            for table, features in section:
                descriptions = reply.features.setdefault(str(table), [])
                for name, count in features:
                    count = int(count)
                    if count < 0:
                        raise ProtocolError(f"Negative count for {table}.{name}")
                    nbytes = count if kind == STRING else count * REPLY_DTYPES[kind].itemsize
                    if offset + nbytes > len(data):
                        raise ProtocolError(f"Run reply data too short for {table}.{name}")
                    if kind == STRING:
                        value: FeatureValues = data[offset:offset + nbytes].decode("utf-8")
                    elif count == 0:
                        value = np.zeros(0, dtype=KIND_DTYPES[kind])
                    else:
                        value = np.frombuffer(
                            data, dtype=REPLY_DTYPES[kind], count=count, offset=offset
                        ).astype(KIND_DTYPES[kind])
                    offset += nbytes
                    descriptions.append(FeatureDescription(str(table), str(name), kind, count))
                    reply.values[(str(table), kind, str(name))] = value
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Unexpected run reply layout: {exc!r}") from exc

    if offset != len(data):
        raise ProtocolError(f"Run reply carries {len(data) - offset} unread byte(s)")

    for table, descriptions in reply.features.items():
        counts = {d.count for d in descriptions if d.kind in NUMERIC_KINDS}
        if len(counts) > 1:
            raise ProtocolError(f"Result table '{table}' reports inconsistent object counts {sorted(counts)}")
    return reply


def _message_text(body: list[bytes]) -> str:
    return body[0].decode("utf-8", errors="replace") if body else "(no message)"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class BridgeClient:
    """Strict request/response client for one worker connection.

    Not thread-safe; the owning session serialises access.
    """

    def __init__(
        self,
        context: Optional[zmq.Context] = None,
        poll_interval_s: float = 0.5,
        liveness: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        """
        Args:
            context:         ZeroMQ context; a private one is created (and
                             terminated on disconnect) if omitted.
            poll_interval_s: Slice length while waiting for a reply.
            liveness:        Called between slices; returns a reason string
                             when the peer is known to be gone.
        """
        self._owns_context = context is None
        self._context = context or zmq.Context()
        self._poll_ms = max(1, int(poll_interval_s * 1000))
        self._liveness = liveness
        self._session_id = uuid.uuid4().hex.encode("ascii")
        self._socket: Optional[zmq.Socket] = None
        self._broken = False
        self._address = ""

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, address: str, timeout_s: Optional[float] = None) -> None:
        """Open the socket and perform the connect handshake."""
        try:
            self._socket = self._context.socket(zmq.REQ)
            self._socket.setsockopt(zmq.LINGER, 0)
            self._socket.connect(address)
        except zmq.ZMQError as exc:
            raise BridgeConnectionError(f"Could not connect to worker at {address}: {exc}") from exc
        self._address = address
        try:
            self.request(CONNECT_REQ_1, expect=CONNECT_REPLY_1, timeout_s=timeout_s)
        except ProtocolError as exc:
            self._broken = True
            raise BridgeConnectionError(f"Handshake with {address} failed: {exc}") from exc
        logger.info("Connected to worker at %s", address)

    def disconnect(self) -> None:
        """Close the socket (and the private context). Safe to call twice."""
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
            logger.debug("Disconnected from %s", self._address)
        if self._owns_context and not self._context.closed:
            self._context.term()

    @property
    def connected(self) -> bool:
        return self._socket is not None and not self._broken

    @property
    def broken(self) -> bool:
        return self._broken

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def pipeline_info(self, pipeline: bytes, timeout_s: Optional[float] = None) -> PipelineInfo:
        body = self.request(PIPELINE_INFO_REQ_1, pipeline, expect=PIPELINE_INFO_REPLY_1, timeout_s=timeout_s)
        return parse_pipeline_info(body)

    def clean_pipeline(self, pipeline: bytes, timeout_s: Optional[float] = None) -> bytes:
        body = self.request(CLEAN_PIPELINE_REQ_1, pipeline, expect=CLEAN_PIPELINE_REPLY_1, timeout_s=timeout_s)
        if len(body) != 1:
            raise ProtocolError(f"Clean pipeline reply has {len(body)} body frame(s), expected 1")
        return body[0]

    def run(
        self,
        pipeline: bytes,
        images: Mapping[str, np.ndarray],
        group: bool = False,
        timeout_s: Optional[float] = None,
    ) -> RunReply:
        metadata: list[list[Any]] = []
        buffers: list[bytes] = []
        for channel, pixels in images.items():
            axes, buf = encode_image(pixels)
            metadata.append([channel, axes])
            buffers.append(buf)
        message_type = RUN_GROUP_REQ_1 if group else RUN_REQ_1
        body = self.request(
            message_type,
            pipeline,
            json.dumps(metadata).encode("utf-8"),
            *buffers,
            expect=RUN_REPLY_1,
            timeout_s=timeout_s,
        )
        return parse_run_reply(body)

    # ------------------------------------------------------------------
    # Round trip
    # ------------------------------------------------------------------

    def request(self, message_type: bytes, *body: bytes, expect: bytes, timeout_s: Optional[float] = None) -> list[bytes]:
        """Send one request and return the body frames of the expected reply."""
        if self._socket is None:
            raise BridgeConnectionError("Not connected to a worker")
        if self._broken:
            raise BridgeConnectionError("Worker connection is unusable after an earlier failure")

        try:
            self._socket.send_multipart([self._session_id, b"", message_type, *body])
        except zmq.ZMQError as exc:
            self._broken = True
            raise BridgeConnectionError(f"Sending {message_type.decode()} failed: {exc}") from exc

        frames = self._await_reply(message_type, timeout_s)
        if len(frames) < 3 or frames[1] != b"":
            raise ProtocolError(f"Malformed reply envelope ({len(frames)} frame(s))")
        if frames[0] != self._session_id:
            raise ProtocolError("Reply belongs to a different session")

        reply_type, reply_body = frames[2], frames[3:]
        if reply_type == CELLPROFILER_EXCEPTION_1:
            raise BridgeComputeError(_message_text(reply_body))
        if reply_type == PIPELINE_EXCEPTION_1:
            raise PipelineError(_message_text(reply_body))
        if reply_type != expect:
            raise ProtocolError(
                f"Expected {expect.decode()} in reply to {message_type.decode()}, got {reply_type!r}"
            )
        return reply_body

    def _await_reply(self, message_type: bytes, timeout_s: Optional[float]) -> list[bytes]:
        assert self._socket is not None
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        while True:
            wait_ms = self._poll_ms
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._broken = True
                    raise BridgeConnectionError(
                        f"No reply to {message_type.decode()} within {timeout_s:.1f}s"
                    )
                wait_ms = max(1, min(wait_ms, int(remaining * 1000)))
            try:
                if self._socket.poll(wait_ms, zmq.POLLIN):
                    return self._socket.recv_multipart()
            except zmq.ZMQError as exc:
                self._broken = True
                raise BridgeConnectionError(f"Receiving reply failed: {exc}") from exc
            if self._liveness is not None:
                reason = self._liveness()
                if reason:
                    self._broken = True
                    raise BridgeConnectionError(reason)
