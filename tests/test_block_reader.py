import numpy as np
import pytest

from cmr_dicom_import.block_reader import (
    BlockRange,
    decode_pixel_values,
    file_position,
    load_image_bytes,
    read_image_block,
    read_image_block_from_bytes,
    read_image_bytes,
    save_image_bytes,
)
from cmr_dicom_import.file_metadata import extract_file_record
from cmr_dicom_import.decoder import DicomFileDecoder
from cmr_dicom_import.records import ImageRecord


def make_image(columns=3, rows=2, slices=2, times=2, bits=16, high_bit=11):
    return ImageRecord(
        file_start=0,
        file_end=slices * times,
        columns=columns,
        rows=rows,
        slices=slices,
        temporal_positions=times,
        bits_allocated=bits,
        bits_stored=bits,
        high_bit=high_bit,
    )


def slice_values(image, s, t):
    """Pixel value = 100 * slice + 10 * time + pixel index."""
    return 100 * s + 10 * t + np.arange(image.rows * image.columns).reshape(image.rows, image.columns)


def image_bytes(image):
    chunks = []
    for s in range(image.slices):
        for t in range(image.temporal_positions):
            chunks.append(slice_values(image, s, t).astype("<u2").tobytes())
    return b"".join(chunks)


class TestBlockRange:
    def test_normalized_swaps_reversed_bounds(self):
        block = BlockRange.normalized(5, 1, 0, 0, 3, 2, 0, 4)
        assert (block.x0, block.x1, block.z0, block.z1) == (1, 5, 2, 3)

    def test_output_shape_keeps_spanning_axes(self):
        assert BlockRange(0, 3, 0, 0, 1, 2, 0, 0).output_shape == (4, 2)
        assert BlockRange(0, 0, 0, 0, 0, 0, 0, 0).output_shape == ()

    def test_full_range(self):
        block = BlockRange.full(make_image(columns=3, rows=2, slices=0, times=0))
        assert block == BlockRange(0, 2, 0, 1, 0, 0, 0, 0)


def test_file_position_is_slice_major():
    image = make_image(slices=3, times=4)
    assert file_position(image, 0) == (0, 0)
    assert file_position(image, 5) == (1, 1)
    assert file_position(image, 11) == (2, 3)


class TestDecodePixelValues:
    def test_little_endian_16_bit(self):
        image = make_image(columns=2, rows=1)
        values = decode_pixel_values(np.array([1, 300], dtype="<u2").tobytes(), image)
        np.testing.assert_array_equal(values, [[1, 300]])

    def test_high_bit_zero_means_big_endian(self):
        image = make_image(columns=2, rows=1, high_bit=0)
        values = decode_pixel_values(np.array([1, 300], dtype=">u2").tobytes(), image)
        np.testing.assert_array_equal(values, [[1, 300]])

    def test_24_bit_pixels(self):
        image = make_image(columns=2, rows=1, bits=24, high_bit=23)
        values = decode_pixel_values(bytes([1, 0, 0, 0, 1, 0]), image)
        np.testing.assert_array_equal(values, [[1, 256]])

    def test_short_buffer_raises(self):
        with pytest.raises(ValueError):
            decode_pixel_values(b"\x00\x01", make_image())


class TestReadFromBytes:
    def test_full_image(self):
        image = make_image()
        volume = read_image_block_from_bytes(image, image_bytes(image), BlockRange.full(image))

        assert volume.shape == (3, 2, 2, 2)
        assert volume.dtype == np.float64
        for s in range(2):
            for t in range(2):
                np.testing.assert_array_equal(volume[:, :, s, t], slice_values(image, s, t).T)

    def test_sub_block_is_relative_to_range_start(self):
        image = make_image()
        block = BlockRange.normalized(2, 1, 1, 1, 1, 1, 0, 1)

        values = read_image_block_from_bytes(image, image_bytes(image), block)

        assert values.shape == (2, 2)
        np.testing.assert_array_equal(values[:, 0], [100 + 4, 100 + 5])
        np.testing.assert_array_equal(values[:, 1], [110 + 4, 110 + 5])

    def test_truncated_bytes_leave_zeros(self):
        image = make_image()
        data = image_bytes(image)[:12 * 3]

        volume = read_image_block_from_bytes(image, data, BlockRange.full(image))

        assert volume[:, :, 1, 1].sum() == 0
        assert volume[:, :, 0, 0].sum() > 0

    def test_too_many_axes_returns_empty(self):
        image = make_image(slices=1, times=1)
        block = BlockRange(0, 2, 0, 1, 0, 1, 0, 0)
        assert read_image_block_from_bytes(image, image_bytes(image), block).size == 0

    def test_empty_bytes(self):
        image = make_image()
        assert read_image_block_from_bytes(image, b"", BlockRange.full(image)).size == 0


class TestReadFromFiles:
    def build(self, decoders, mr_dataset):
        image = ImageRecord(
            file_start=1, file_end=7, columns=4, rows=4, slices=3, temporal_positions=2,
            bits_allocated=16, bits_stored=12, high_bit=11,
        )
        files = [extract_file_record(DicomFileDecoder(mr_dataset("9.9", 99)), "other.dcm")]
        for s in range(3):
            for t in range(2):
                name = f"mem/{s}_{t}.dcm"
                decoders.datasets[name] = mr_dataset("1.2.3", s * 2 + t + 1, slice_index=s, time_index=t)
                files.append(extract_file_record(DicomFileDecoder(decoders.datasets[name]), name))
        return image, files

    def test_reads_block_from_each_file(self, decoders, mr_dataset):
        image, files = self.build(decoders, mr_dataset)

        volume = read_image_block(image, files, BlockRange.full(image), decoders, max_workers=3)

        assert volume.shape == (4, 4, 3, 2)
        # Pixel (x, y) of slice s at time t holds 1000 * s + 100 * t + 4 * y + x
        assert volume[1, 2, 2, 1] == 2000 + 100 + 8 + 1
        assert volume[3, 0, 0, 0] == 3

    def test_only_requested_files_are_opened(self, decoders, mr_dataset):
        image, files = self.build(decoders, mr_dataset)
        opened = []

        def factory(path, stop_before_pixels=False):
            opened.append(path)
            return decoders(path, stop_before_pixels)

        values = read_image_block(image, files, BlockRange(0, 3, 0, 3, 1, 1, 0, 0), factory)

        assert values.shape == (4, 4)
        assert opened == ["mem/1_0.dcm"]
        assert values[0, 0] == 1000

    def test_missing_file_leaves_zeros(self, decoders, mr_dataset):
        image, files = self.build(decoders, mr_dataset)
        del decoders.datasets["mem/2_1.dcm"]

        volume = read_image_block(image, files, BlockRange.full(image), decoders)

        assert volume[:, :, 2, 1].sum() == 0
        assert volume[:, :, 2, 0].sum() > 0

    def test_read_image_bytes_zero_fills(self, decoders, mr_dataset):
        image, files = self.build(decoders, mr_dataset)
        del decoders.datasets["mem/0_1.dcm"]

        data = read_image_bytes(image, files, decoders)

        assert len(data) == 6 * 16 * 2
        assert data[32:64] == bytes(32)
        volume = read_image_block_from_bytes(image, data, BlockRange.full(image))
        assert volume[1, 2, 2, 1] == 2109


def test_save_and_load_image_bytes(tmp_path):
    path = tmp_path / "image.raw"
    assert save_image_bytes(b"\x01\x02\x03", path)
    assert load_image_bytes(path) == b"\x01\x02\x03"
    assert load_image_bytes(tmp_path / "missing.raw") == b""
    assert not save_image_bytes(b"x", tmp_path / "no" / "such" / "dir.raw")
