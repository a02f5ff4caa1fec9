import io

import numpy as np
import pytest

from cmr_dicom_import.grid import DimensionClass
from cmr_dicom_import.persistence import (
    MAGIC,
    PersistenceError,
    ScanSnapshot,
    load_scan,
    read_scan,
    save_scan,
    write_scan,
)
from cmr_dicom_import.records import FileRecord, GridBucket, ImageRecord


def make_snapshot():
    files = [
        FileRecord(
            filename=f"/data/study/IM{i}",
            instance_number=i + 1,
            study_instance_uid="1.2",
            series_instance_uid="1.2.3",
            sequence_name="fl3d1",
            protocol_name="Flow Ü",
            slice_location=2.0 * i,
            acquisition_time=36_000_000.0 + 50 * i,
            image_position_patient=np.array([0.5, -1.0, 2.0 * i]),
        )
        for i in range(4)
    ]
    image = ImageRecord(
        file_start=0,
        file_end=4,
        n_dimensions=4,
        rows=4,
        columns=4,
        slices=2,
        temporal_positions=2,
        row_spacing=1.5,
        col_spacing=1.25,
        slice_spacing=2.0,
        temporal_resolution=50.0,
        bits_allocated=16,
        bits_stored=12,
        high_bit=11,
        largest_image_pixel_value=4096.0,
        patient_name="Doe_John",
        patient_age=45,
        series_instance_uid="1.2.3",
    )
    image.world_matrix = np.arange(16, dtype=np.float64).reshape(4, 4)
    image.image_orientation_patient_x = np.array([1.0, 0.0, 0.0])
    buckets = {cls: [] for cls in DimensionClass}
    buckets[DimensionClass.IMAGE_3DT] = [GridBucket(size=(4, 4, 2, 2), image_ids=[0])]
    return ScanSnapshot(directory="/data/study/", dataset_name="Doe_John", files=files, images=[image], buckets=buckets)


def roundtrip(snapshot, write_ext=None, read_ext=None):
    stream = io.BytesIO()
    write_scan(stream, snapshot, write_ext)
    stream.seek(0)
    return read_scan(stream, read_ext)


def test_roundtrip_preserves_records():
    snapshot = make_snapshot()

    loaded = roundtrip(snapshot)

    assert loaded.directory == "/data/study/"
    assert loaded.dataset_name == "Doe_John"
    assert [f.filename for f in loaded.files] == [f.filename for f in snapshot.files]
    assert loaded.files[3].protocol_name == "Flow Ü"
    np.testing.assert_allclose(loaded.files[2].image_position_patient, [0.5, -1.0, 4.0])

    image = loaded.images[0]
    assert image.grid_size == (4, 4, 2, 2)
    assert image.high_bit == 11
    assert image.col_spacing == 1.25
    assert image.patient_age == 45
    np.testing.assert_array_equal(image.world_matrix, snapshot.images[0].world_matrix)
    np.testing.assert_array_equal(image.image_orientation_patient_x, [1.0, 0.0, 0.0])

    assert loaded.buckets[DimensionClass.IMAGE_3DT] == [GridBucket(size=(4, 4, 2, 2), image_ids=[0])]
    assert loaded.buckets[DimensionClass.IMAGE_2D] == []


def test_negative_high_bit_survives():
    snapshot = make_snapshot()
    snapshot.images[0].high_bit = -1
    assert roundtrip(snapshot).images[0].high_bit == -1


def test_extension_block_is_passed_through():
    seen = []

    def write_ext(writer):
        writer.write_u32(7)
        writer.write_string("xyz")

    def read_ext(reader):
        seen.append((reader.read_u32(), reader.read_string(), reader.at_end()))

    roundtrip(make_snapshot(), write_ext, read_ext)

    assert seen == [(7, "xyz", True)]


class TestInvalidFiles:
    def test_bad_magic(self):
        with pytest.raises(PersistenceError, match="magic"):
            read_scan(io.BytesIO(b"NOTASCAN" + bytes(16)))

    def test_unsupported_version(self):
        with pytest.raises(PersistenceError, match="version"):
            read_scan(io.BytesIO(MAGIC + (99).to_bytes(4, "little")))

    def test_truncated(self):
        stream = io.BytesIO()
        write_scan(stream, make_snapshot())
        data = stream.getvalue()
        with pytest.raises(PersistenceError, match="unexpected end"):
            read_scan(io.BytesIO(data[: len(data) // 2]))

    def test_bucket_with_unknown_image(self):
        snapshot = make_snapshot()
        snapshot.buckets[DimensionClass.IMAGE_2D] = [GridBucket(size=(4, 4), image_ids=[5])]
        with pytest.raises(PersistenceError, match="unknown image id"):
            roundtrip(snapshot)

    def test_bucket_size_length_is_checked_on_write(self):
        snapshot = make_snapshot()
        snapshot.buckets[DimensionClass.IMAGE_2D] = [GridBucket(size=(4, 4, 1), image_ids=[0])]
        with pytest.raises(PersistenceError):
            write_scan(io.BytesIO(), snapshot)

    def test_image_range_outside_files(self):
        snapshot = make_snapshot()
        snapshot.images[0].file_end = 9
        with pytest.raises(PersistenceError, match="file range"):
            roundtrip(snapshot)


def test_save_creates_parent_directories(tmp_path):
    path = tmp_path / "cache" / "scans" / "x_scan.bin"

    save_scan(path, make_snapshot())

    assert path.read_bytes().startswith(MAGIC)
    assert load_scan(path).images[0].temporal_resolution == 50.0
