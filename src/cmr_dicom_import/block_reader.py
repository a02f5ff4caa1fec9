"""
Pixel block reading.

Files of an image are ordered slice-major: s0t0, s0t1, ..., s1t0, s1t1, ...
so file n of an image with T temporal positions holds slice ``n // T`` at
time step ``n % T``. Within a file, pixel k sits at x = k % Columns and
y = k // Columns.

Blocks are returned as float64 numpy arrays over the axes the requested
range spans, in (x, y, z, t) order, indexed relative to the range start.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np

from .constants import DEFAULT_MAX_WORKERS
from .decoder import DecoderFactory, open_decoder
from .records import FileRecord, ImageRecord
from .workers import optimal_workers

logger = logging.getLogger(__name__)

_UNSIGNED_DTYPES = {8: "u1", 16: "u2", 32: "u4", 64: "u8"}


@dataclass(frozen=True)
class BlockRange:
    """Inclusive pixel ranges on the x, y, z and t axes, each with from <= to."""

    x0: int
    x1: int
    y0: int
    y1: int
    z0: int
    z1: int
    t0: int
    t1: int

    @classmethod
    def normalized(cls, x0, x1, y0, y1, z0, z1, t0, t1) -> "BlockRange":
        """Build a range, swapping any bounds given in reverse."""
        x0, x1 = sorted((int(x0), int(x1)))
        y0, y1 = sorted((int(y0), int(y1)))
        z0, z1 = sorted((int(z0), int(z1)))
        t0, t1 = sorted((int(t0), int(t1)))
        return cls(x0, x1, y0, y1, z0, z1, t0, t1)

    @classmethod
    def full(cls, image: ImageRecord) -> "BlockRange":
        return cls(
            0, max(image.columns, 1) - 1,
            0, max(image.rows, 1) - 1,
            0, max(image.slices, 1) - 1,
            0, max(image.temporal_positions, 1) - 1,
        )

    @property
    def extents(self) -> Tuple[int, int, int, int]:
        return (
            self.x1 - self.x0 + 1,
            self.y1 - self.y0 + 1,
            self.z1 - self.z0 + 1,
            self.t1 - self.t0 + 1,
        )

    @property
    def has_axes(self) -> Tuple[bool, bool, bool, bool]:
        return tuple(extent > 1 for extent in self.extents)

    @property
    def num_axes(self) -> int:
        return sum(self.has_axes)

    @property
    def output_shape(self) -> Tuple[int, ...]:
        return tuple(extent for extent, present in zip(self.extents, self.has_axes) if present)

    def contains_file_position(self, slice_index: int, time_index: int) -> bool:
        return self.z0 <= slice_index <= self.z1 and self.t0 <= time_index <= self.t1


def bytes_per_pixel(image: ImageRecord) -> int:
    return image.bits_allocated // 8


def pixels_per_slice(image: ImageRecord) -> int:
    return image.rows * image.columns


def is_little_endian(image: ImageRecord) -> bool:
    return image.high_bit != 0


def file_position(image: ImageRecord, n: int) -> Tuple[int, int]:
    """Return (slice index, time index) of the n-th file of an image."""
    temporal_positions = max(image.temporal_positions, 1)
    return n // temporal_positions, n % temporal_positions


def decode_pixel_values(buffer: bytes, image: ImageRecord) -> np.ndarray:
    """
    Interpret one slice buffer as unsigned pixel values.

    Args:
        buffer: Raw bytes of at least Rows x Columns pixels
        image: Image record providing bit depth, endianness and size

    Returns:
        (Rows, Columns) array of unsigned integers

    Raises:
        ValueError: If the buffer is too short for one slice
    """
    bpp = bytes_per_pixel(image)
    npix = pixels_per_slice(image)
    if bpp <= 0 or len(buffer) < bpp * npix:
        raise ValueError(f"pixel buffer of {len(buffer)} bytes is too short for {npix} pixels of {bpp} bytes")

    order = "<" if is_little_endian(image) else ">"
    dtype = _UNSIGNED_DTYPES.get(image.bits_allocated)
    if dtype is not None:
        values = np.frombuffer(buffer, dtype=order + dtype, count=npix)
    else:
        # Bit depths numpy has no dtype for: unpack the bits of every pixel
        raw = np.frombuffer(buffer, dtype=np.uint8, count=bpp * npix).reshape(npix, bpp)
        if order == "<":
            raw = raw[:, ::-1]
        bits = np.unpackbits(raw, axis=1)
        weights = 2 ** np.arange(bits.shape[1] - 1, -1, -1, dtype=np.uint64)
        values = bits.astype(np.uint64) @ weights

    return values.reshape(image.rows, image.columns)


def _empty_block() -> np.ndarray:
    return np.zeros(0, dtype=np.float64)


def _block_is_readable(image: ImageRecord, block: BlockRange) -> bool:
    n_dimensions = image.count_dimensions()
    if n_dimensions == 0 or block.num_axes > n_dimensions:
        logger.warning(
            f"Cannot read a {block.num_axes}-axis block from image "
            f"{image.series_instance_uid} with {n_dimensions} dimensions"
        )
        return False
    return True


def _place_slice(out: np.ndarray, pixels: np.ndarray, block: BlockRange, slice_index: int, time_index: int) -> None:
    # pixels is (rows, columns); out is (x, y, z, t)
    region = pixels[block.y0:block.y1 + 1, block.x0:block.x1 + 1].T
    out[:region.shape[0], :region.shape[1], slice_index - block.z0, time_index - block.t0] = region


def read_image_block(
    image: ImageRecord,
    files: List[FileRecord],
    block: BlockRange,
    decoder_factory: DecoderFactory = open_decoder,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> np.ndarray:
    """
    Read a block of pixel values from the files of an image.

    Only files inside the z/t range are decoded. A file that cannot be read
    or decoded is logged and leaves zeros in the block.

    Args:
        image: Aggregated image record
        files: The full ordered file list
        block: Normalized range to read
        decoder_factory: Opens a file for pixel access
        max_workers: Threads used to read files

    Returns:
        float64 array over the axes present in ``block``; empty if the block
        has more axes than the image
    """
    if not _block_is_readable(image, block):
        return _empty_block()

    out = np.zeros(block.extents, dtype=np.float64)

    wanted = []
    for n in range(image.num_files):
        slice_index, time_index = file_position(image, n)
        if block.contains_file_position(slice_index, time_index):
            wanted.append((image.file_start + n, slice_index, time_index))

    def read_single(file_index: int) -> Optional[np.ndarray]:
        filename = files[file_index].filename
        decoder = decoder_factory(filename)
        if decoder is None:
            logger.warning(f"Could not read pixels of file {filename}")
            return None
        return decode_pixel_values(decoder.raw_pixel_buffer(), image)

    workers = optimal_workers(len(wanted), max_workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(read_single, file_index): (file_index, slice_index, time_index)
            for file_index, slice_index, time_index in wanted
        }
        for future in as_completed(futures):
            file_index, slice_index, time_index = futures[future]
            try:
                pixels = future.result()
            except Exception as e:
                logger.warning(f"Could not decode pixels of file {files[file_index].filename}: {e}")
                continue
            if pixels is not None:
                _place_slice(out, pixels, block, slice_index, time_index)

    return out.reshape(block.output_shape)


def read_image_bytes(
    image: ImageRecord,
    files: List[FileRecord],
    decoder_factory: DecoderFactory = open_decoder,
) -> bytes:
    """
    Concatenate the raw pixel buffers of all files of an image.

    Unreadable files contribute one slice of zero bytes so that offsets of the
    following files stay valid.
    """
    if image.count_dimensions() == 0:
        return b""

    slice_bytes = bytes_per_pixel(image) * pixels_per_slice(image)
    chunks = []
    for k in range(image.file_start, image.file_end):
        filename = files[k].filename
        decoder = decoder_factory(filename)
        buffer = decoder.raw_pixel_buffer() if decoder is not None else b""
        if not buffer:
            logger.warning(f"Could not read pixels of file {filename}")
            buffer = bytes(slice_bytes)
        chunks.append(buffer)
    return b"".join(chunks)


def read_image_block_from_bytes(image: ImageRecord, data: bytes, block: BlockRange) -> np.ndarray:
    """
    Read a block from a buffer produced by ``read_image_bytes``.

    Slice ``s`` at time ``t`` starts at byte ``bpp * npix * (t + s * T)``.
    Slices beyond the end of the buffer are left as zeros.
    """
    if not data or not _block_is_readable(image, block):
        return _empty_block()

    out = np.zeros(block.extents, dtype=np.float64)
    slice_bytes = bytes_per_pixel(image) * pixels_per_slice(image)
    temporal_positions = max(image.temporal_positions, 1)

    for n in range(image.num_files):
        slice_index, time_index = file_position(image, n)
        if not block.contains_file_position(slice_index, time_index):
            continue
        offset = slice_bytes * (time_index + slice_index * temporal_positions)
        chunk = data[offset:offset + slice_bytes]
        try:
            pixels = decode_pixel_values(chunk, image)
        except ValueError as e:
            logger.warning(f"Cached bytes end before slice {slice_index}, time {time_index}: {e}")
            continue
        _place_slice(out, pixels, block, slice_index, time_index)

    return out.reshape(block.output_shape)


def save_image_bytes(data: bytes, path: Union[str, Path]) -> bool:
    try:
        Path(path).write_bytes(data)
    except OSError as e:
        logger.error(f"Could not write image bytes to {path}: {e}")
        return False
    return True


def load_image_bytes(path: Union[str, Path]) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        logger.error(f"Could not read image bytes from {path}: {e}")
        return b""
