"""tests/unit/test_table.py: MeasurementTable container, equality and encoding."""

from __future__ import annotations

import struct

import numpy as np
import pytest

from cpbridge.core.exceptions import SerializationError
from cpbridge.measurements.features import DOUBLE, FLOAT, INT, STRING, FeatureValueSet
from cpbridge.measurements.table import MeasurementTable


class TestMeasurementTableAccess:
    def test_names_per_kind(self, nuclei_table):
        assert nuclei_table.double_features() == ["AreaShape_Area"]
        assert nuclei_table.float_features() == ["Intensity_MeanIntensity_DNA"]
        assert nuclei_table.int_features() == ["Number_Object_Number"]
        assert nuclei_table.string_features() == ["Metadata_Well"]

    def test_typed_values(self, nuclei_table):
        assert nuclei_table.double_values("AreaShape_Area").dtype == np.float64
        assert nuclei_table.float_values("Intensity_MeanIntensity_DNA").dtype == np.float32
        assert nuclei_table.int_values("Number_Object_Number").tolist() == [1, 2, 3]
        assert nuclei_table.string_value("Metadata_Well") == "A01"

    def test_missing_feature(self, nuclei_table):
        assert nuclei_table.get(DOUBLE, "nope") is None
        with pytest.raises(KeyError):
            nuclei_table.values(INT, "nope")

    def test_same_name_in_two_kinds(self):
        t = MeasurementTable().add_double_feature("x", [1.0]).add_int_feature("x", [2])
        assert t.double_values("x").tolist() == [1.0]
        assert t.int_values("x").tolist() == [2]
        assert len(t) == 2

    def test_object_count(self, nuclei_table):
        assert nuclei_table.object_count() == 3
        assert MeasurementTable().add_string_feature("s", "v").object_count() == 0

    def test_str_lists_sorted_names(self, nuclei_table):
        assert str(nuclei_table) == str(sorted(
            ["AreaShape_Area", "Intensity_MeanIntensity_DNA", "Number_Object_Number", "Metadata_Well"]
        ))

    def test_freeze_blocks_adds(self, nuclei_table):
        nuclei_table.freeze()
        assert nuclei_table.frozen
        with pytest.raises(RuntimeError):
            nuclei_table.add_double_feature("late", [1.0])

    def test_features_round_trip_through_add(self, nuclei_table):
        copy = MeasurementTable()
        for f in nuclei_table.features():
            copy.add(f)
        assert copy == nuclei_table


class TestMeasurementTableEquality:
    def test_reflexive(self, nuclei_table):
        assert nuclei_table == nuclei_table

    def test_symmetric(self, nuclei_table):
        other = MeasurementTable()
        for f in nuclei_table.features():
            other.add(f)
        assert nuclei_table == other
        assert other == nuclei_table
        assert hash(nuclei_table) == hash(other)

    def test_insertion_order_irrelevant(self):
        a = MeasurementTable().add_double_feature("a", [1.0]).add_double_feature("b", [2.0])
        b = MeasurementTable().add_double_feature("b", [2.0]).add_double_feature("a", [1.0])
        assert a == b
        assert hash(a) == hash(b)

    def test_differs_by_value(self):
        a = MeasurementTable().add_double_feature("a", [1.0])
        b = MeasurementTable().add_double_feature("a", [1.5])
        assert a != b

    def test_differs_by_kind(self):
        a = MeasurementTable().add_double_feature("a", [1.0])
        b = MeasurementTable().add_float_feature("a", [1.0])
        assert a != b

    def test_nan_values_equal(self):
        a = MeasurementTable().add_double_feature("a", [np.nan, 1.0])
        b = MeasurementTable().add_double_feature("a", [np.nan, 1.0])
        assert a == b
        assert hash(a) == hash(b)

    def test_usable_as_dict_key(self, nuclei_table, image_table):
        seen = {nuclei_table: "nuclei", image_table: "image"}
        assert seen[nuclei_table] == "nuclei"

    def test_not_equal_to_other_types(self, nuclei_table):
        assert nuclei_table != {"AreaShape_Area": [120.0]}


class TestMeasurementTableEncoding:
    def test_round_trip(self, nuclei_table):
        decoded = MeasurementTable.decode(nuclei_table.encode())
        assert decoded == nuclei_table
        assert decoded.frozen

    def test_round_trip_all_kinds_with_empty_values(self):
        t = (
            MeasurementTable()
            .add_double_feature("AreaShape_Area", [120.0, 95.5])
            .add_double_feature("empty", [])
            .add_float_feature("Intensity_MeanIntensity_DNA", [0.25, 0.75])
            .add_int_feature("Number_Object_Number", [1, 2])
            .add_string_feature("Metadata_Well", "A01")
            .add_string_feature("blank", "")
        )
        decoded = MeasurementTable.decode(t.encode())
        assert decoded == t
        assert decoded.double_values("AreaShape_Area").tolist() == [120.0, 95.5]
        assert decoded.double_values("empty").size == 0
        assert decoded.float_values("Intensity_MeanIntensity_DNA").dtype == np.float32
        assert decoded.int_values("Number_Object_Number").tolist() == [1, 2]
        assert decoded.string_value("Metadata_Well") == "A01"
        assert decoded.string_value("blank") == ""

    def test_every_value_survives(self):
        """Each element is decoded into its own slot, not just the first."""
        t = MeasurementTable().add_int_feature("n", [5, 6, 7, 8])
        assert MeasurementTable.decode(t.encode()).int_values("n").tolist() == [5, 6, 7, 8]

    def test_empty_table(self):
        assert MeasurementTable.decode(MeasurementTable().encode()).is_empty

    def test_layout_is_big_endian(self):
        data = MeasurementTable().add_int_feature("n", [1]).encode()
        # double section count 0, float section count 0, int section count 1
        assert data[:12] == struct.pack(">iii", 0, 0, 1)
        assert data[12:15] == struct.pack(">H", 1) + b"n"
        assert data[15:23] == struct.pack(">ii", 1, 1)

    def test_unicode_names(self):
        t = MeasurementTable().add_string_feature("Größe", "µm²")
        assert MeasurementTable.decode(t.encode()).string_value("Größe") == "µm²"

    def test_truncated_payload_raises(self, nuclei_table):
        data = nuclei_table.encode()
        with pytest.raises(SerializationError):
            MeasurementTable.decode(data[:-3])

    def test_trailing_bytes_raise(self, nuclei_table):
        with pytest.raises(SerializationError, match="trailing"):
            MeasurementTable.decode(nuclei_table.encode() + b"\x00")

    def test_negative_count_raises(self):
        with pytest.raises(SerializationError):
            MeasurementTable.decode(struct.pack(">i", -1))

    def test_overlong_string_rejected(self):
        t = MeasurementTable().add_string_feature("s", "x" * 70000)
        with pytest.raises(SerializationError):
            t.encode()

    def test_decoded_values_keep_kind(self, nuclei_table):
        decoded = MeasurementTable.decode(nuclei_table.encode())
        kinds = {f.kind for f in decoded.features()}
        assert kinds == {DOUBLE, FLOAT, INT, STRING}
        assert all(isinstance(f, FeatureValueSet) for f in decoded.features())
