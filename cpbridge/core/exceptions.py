"""
core/exceptions.py
------------------
Custom exception hierarchy for the bridge.
"""

from __future__ import annotations


class CPBridgeError(Exception):
    """Root exception for all bridge-specific errors."""


# --- Configuration / startup ---

class ConfigurationError(CPBridgeError):
    """Raised when the configuration is missing, unset, or points at a bad path."""


class ResourceError(CPBridgeError):
    """Raised when a local resource (e.g. a free TCP port) cannot be obtained."""


# --- Session / protocol ---

class BridgeConnectionError(CPBridgeError, ConnectionError):
    """Raised when the worker connection cannot be opened or is no longer usable."""


class PipelineError(CPBridgeError):
    """Raised when the worker rejects the pipeline definition."""


class ProtocolError(CPBridgeError):
    """Raised on a malformed request/response exchange with the worker."""


class BridgeComputeError(CPBridgeError):
    """Raised when the worker reports an internal analysis failure."""


class SessionStateError(CPBridgeError, RuntimeError):
    """Raised when a session operation is called in the wrong lifecycle state."""


# --- Data ---

class ImageFormatError(CPBridgeError):
    """Raised when a row image cannot be marshalled for the worker."""


class SerializationError(CPBridgeError):
    """Raised when a binary measurement payload is truncated or malformed."""


class IngestionError(CPBridgeError):
    """Raised when a RowProvider cannot open or read its source."""


# --- Row processing ---

class RowError(CPBridgeError):
    """A failure scoped to a single input row."""

    def __init__(self, row_key: str, cause: BaseException) -> None:
        super().__init__(f"Row '{row_key}' failed: {cause}")
        self.row_key = row_key
        self.cause = cause
