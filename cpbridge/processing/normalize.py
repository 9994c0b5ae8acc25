"""
processing/normalize.py
-----------------------
ImageNormalizer: rescales a pixel buffer of any real sample type to float32
in [0, 1] using the buffer's own minimum and maximum.

  out = (x - min) / (max - min)

* The range is computed over the same buffer (not the dtype's range).
* NaN samples are ignored for the range and stay NaN in the output.
* Constant buffers (max == min) map to 0.0 everywhere.
* The source buffer is never modified.
"""

from __future__ import annotations

import logging

import numpy as np

from cpbridge.core.exceptions import ImageFormatError

logger = logging.getLogger(__name__)


class ImageNormalizer:
    """Converts arbitrary-precision pixel buffers to normalized float32."""

    def __init__(self, constant_value: float = 0.0) -> None:
        self._constant_value = np.float32(constant_value)

    def normalize(self, image: np.ndarray) -> np.ndarray:
        """Return a new float32 array with the shape of *image*, scaled to [0, 1]."""
        image = np.asarray(image)
        if image.dtype.kind not in "biuf":
            raise ImageFormatError(f"Cannot normalize samples of dtype {image.dtype}")

        if image.size == 0:
            return np.zeros(image.shape, dtype=np.float32)

        samples = image.astype(np.float64)
        lo, hi = self.value_range(samples)

        if not np.isfinite(lo) or not np.isfinite(hi) or hi == lo:
            logger.debug("Zero-range image %s (min=%s, max=%s); filling with %s",
                         image.shape, lo, hi, self._constant_value)
            out = np.full(image.shape, self._constant_value, dtype=np.float32)
            out[np.isnan(samples)] = np.nan
            return out

        samples -= lo
        samples /= hi - lo
        return samples.astype(np.float32)

    __call__ = normalize

    @staticmethod
    def value_range(samples: np.ndarray) -> tuple[float, float]:
        """True (min, max) of *samples*, ignoring NaN. (nan, nan) if all NaN."""
        if samples.dtype.kind == "f":
            finite_or_inf = samples[~np.isnan(samples)]
            if finite_or_inf.size == 0:
                return float("nan"), float("nan")
            return float(finite_or_inf.min()), float(finite_or_inf.max())
        return float(samples.min()), float(samples.max())
