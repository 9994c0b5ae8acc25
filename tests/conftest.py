"""
conftest.py
-----------
Shared pytest fixtures for the cpbridge test suite.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from cpbridge.core.config import WorkerConfig
from cpbridge.core.models import ChannelBinding, Row
from cpbridge.measurements.table import MeasurementTable

FAKE_WORKER = Path(__file__).parent / "helpers" / "fake_worker.py"


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def nuclei_table() -> MeasurementTable:
    """Three objects with one feature of every kind."""
    return (
        MeasurementTable()
        .add_double_feature("AreaShape_Area", [120.0, 95.5, 210.25])
        .add_float_feature("Intensity_MeanIntensity_DNA", [0.25, 0.5, 0.75])
        .add_int_feature("Number_Object_Number", [1, 2, 3])
        .add_string_feature("Metadata_Well", "A01")
    )


@pytest.fixture
def image_table() -> MeasurementTable:
    return (
        MeasurementTable()
        .add_double_feature("Intensity_MeanIntensity_DNA", [0.31])
        .add_int_feature("Count_Nuclei", [3])
    )


@pytest.fixture
def dna_image() -> np.ndarray:
    """8×8 uint16 image with three bright pixels (the fake worker's 'nuclei')."""
    img = np.full((8, 8), 100, dtype=np.uint16)
    img[1, 2] = img[4, 5] = img[6, 7] = 4000
    return img


@pytest.fixture
def protein_image() -> np.ndarray:
    return np.arange(64, dtype=np.uint8).reshape(8, 8)


@pytest.fixture
def bindings() -> list[ChannelBinding]:
    return [ChannelBinding("DNA", "dna"), ChannelBinding("Protein", "protein")]


@pytest.fixture
def sample_row(dna_image, protein_image) -> Row:
    return Row(key="A01", cells={"key": "A01", "dna": dna_image, "protein": protein_image})


@pytest.fixture
def fake_worker_path() -> Path:
    return FAKE_WORKER


@pytest.fixture
def fake_worker_config() -> WorkerConfig:
    """Worker settings pointing at the scripted fake worker."""
    return WorkerConfig(
        module_path=str(FAKE_WORKER),
        connect_timeout_s=20.0,
        response_timeout_s=20.0,
        poll_interval_s=0.05,
        shutdown_timeout_s=2.0,
    )
