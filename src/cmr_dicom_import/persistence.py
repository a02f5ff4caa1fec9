"""
Binary scan files.

Layout (all little endian; counts and ids are uint32, strings are
uint32-length-prefixed UTF-8):

    magic, version
    directory, dataset name
    file count, file records
    image count, image records (including the 16 world matrix doubles)
    four bucket tables (2D, 2D+T, 3D, 3D+T):
        group count, then per group: size components, member count, member ids
    extension block written by the importer subclass (may be empty)
"""

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Union

import numpy as np

from .grid import DimensionClass
from .records import FileRecord, GridBucket, ImageRecord

logger = logging.getLogger(__name__)

MAGIC = b"CMRSCAN\x00"
FORMAT_VERSION = 1

# Order in which bucket tables are stored, with the length of their size vectors
BUCKET_TABLES = (
    (DimensionClass.IMAGE_2D, 2),
    (DimensionClass.IMAGE_2DT, 3),
    (DimensionClass.IMAGE_3D, 3),
    (DimensionClass.IMAGE_3DT, 4),
)


class PersistenceError(ValueError):
    """A scan file is truncated, has the wrong magic or an unsupported version."""


class ScanWriter:
    """Little-endian primitive writer."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def write_u32(self, value: int) -> None:
        self.stream.write(struct.pack("<I", int(value)))

    def write_i32(self, value: int) -> None:
        self.stream.write(struct.pack("<i", int(value)))

    def write_f64(self, value: float) -> None:
        self.stream.write(struct.pack("<d", float(value)))

    def write_f64s(self, values) -> None:
        values = [float(v) for v in values]
        self.stream.write(struct.pack(f"<{len(values)}d", *values))

    def write_string(self, value: str) -> None:
        data = (value or "").encode("utf-8")
        self.write_u32(len(data))
        self.stream.write(data)


class ScanReader:
    """Little-endian primitive reader; short reads raise PersistenceError."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def _read(self, n: int) -> bytes:
        data = self.stream.read(n)
        if len(data) != n:
            raise PersistenceError(f"unexpected end of scan file (wanted {n} bytes, got {len(data)})")
        return data

    def at_end(self) -> bool:
        position = self.stream.tell()
        at_end = not self.stream.read(1)
        self.stream.seek(position)
        return at_end

    def read_u32(self) -> int:
        return struct.unpack("<I", self._read(4))[0]

    def read_i32(self) -> int:
        return struct.unpack("<i", self._read(4))[0]

    def read_f64(self) -> float:
        return struct.unpack("<d", self._read(8))[0]

    def read_f64s(self, n: int) -> List[float]:
        return list(struct.unpack(f"<{n}d", self._read(8 * n)))

    def read_string(self) -> str:
        length = self.read_u32()
        try:
            return self._read(length).decode("utf-8")
        except UnicodeDecodeError as e:
            raise PersistenceError(f"invalid string in scan file: {e}") from e


@dataclass
class ScanSnapshot:
    """Everything a scan file holds apart from the extension block."""

    directory: str = ""
    dataset_name: str = ""
    files: List[FileRecord] = field(default_factory=list)
    images: List[ImageRecord] = field(default_factory=list)
    buckets: Dict[DimensionClass, List[GridBucket]] = field(
        default_factory=lambda: {cls: [] for cls in DimensionClass}
    )


def _write_file_record(writer: ScanWriter, record: FileRecord) -> None:
    writer.write_string(record.filename)
    writer.write_u32(record.instance_number)
    writer.write_string(record.study_instance_uid)
    writer.write_string(record.series_instance_uid)
    writer.write_string(record.sequence_name)
    writer.write_string(record.protocol_name)
    writer.write_f64(record.slice_location)
    writer.write_f64(record.acquisition_time)
    writer.write_f64s(record.image_position_patient)


def _read_file_record(reader: ScanReader) -> FileRecord:
    return FileRecord(
        filename=reader.read_string(),
        instance_number=reader.read_u32(),
        study_instance_uid=reader.read_string(),
        series_instance_uid=reader.read_string(),
        sequence_name=reader.read_string(),
        protocol_name=reader.read_string(),
        slice_location=reader.read_f64(),
        acquisition_time=reader.read_f64(),
        image_position_patient=np.array(reader.read_f64s(3), dtype=np.float64),
    )


_IMAGE_INT_FIELDS = (
    "n_dimensions", "rows", "columns", "slices", "temporal_positions", "number_of_frames",
    "samples_per_pixel", "bits_allocated", "bits_stored", "high_bit", "patient_age",
)
_IMAGE_FLOAT_FIELDS = (
    "row_spacing", "col_spacing", "slice_spacing", "temporal_resolution",
    "largest_image_pixel_value", "patient_weight",
)
_IMAGE_STRING_FIELDS = (
    "patient_name", "patient_id", "patient_sex", "patient_birth_date", "patient_position",
    "sequence_name", "sequence_name_private", "modality", "study_description",
    "series_description", "protocol_name", "acquisition_date", "institution_name",
    "study_instance_uid", "series_instance_uid",
)


def _write_image_record(writer: ScanWriter, image: ImageRecord) -> None:
    writer.write_u32(image.file_start)
    writer.write_u32(image.file_end)
    for name in _IMAGE_INT_FIELDS:
        writer.write_i32(getattr(image, name))
    for name in _IMAGE_FLOAT_FIELDS:
        writer.write_f64(getattr(image, name))
    for name in _IMAGE_STRING_FIELDS:
        writer.write_string(getattr(image, name))
    writer.write_f64s(image.image_orientation_patient_x)
    writer.write_f64s(image.image_orientation_patient_y)
    writer.write_f64s(np.asarray(image.world_matrix, dtype=np.float64).reshape(16))


def _read_image_record(reader: ScanReader) -> ImageRecord:
    image = ImageRecord(file_start=reader.read_u32(), file_end=reader.read_u32())
    for name in _IMAGE_INT_FIELDS:
        setattr(image, name, reader.read_i32())
    for name in _IMAGE_FLOAT_FIELDS:
        setattr(image, name, reader.read_f64())
    for name in _IMAGE_STRING_FIELDS:
        setattr(image, name, reader.read_string())
    image.image_orientation_patient_x = np.array(reader.read_f64s(3), dtype=np.float64)
    image.image_orientation_patient_y = np.array(reader.read_f64s(3), dtype=np.float64)
    image.world_matrix = np.array(reader.read_f64s(16), dtype=np.float64).reshape(4, 4)
    return image


def write_scan(
    stream: BinaryIO,
    snapshot: ScanSnapshot,
    extension: Optional[Callable[[ScanWriter], None]] = None,
) -> None:
    writer = ScanWriter(stream)
    stream.write(MAGIC)
    writer.write_u32(FORMAT_VERSION)
    writer.write_string(snapshot.directory)
    writer.write_string(snapshot.dataset_name)

    writer.write_u32(len(snapshot.files))
    for record in snapshot.files:
        _write_file_record(writer, record)

    writer.write_u32(len(snapshot.images))
    for image in snapshot.images:
        _write_image_record(writer, image)

    for cls, size_length in BUCKET_TABLES:
        groups = snapshot.buckets.get(cls, [])
        writer.write_u32(len(groups))
        for group in groups:
            if len(group.size) != size_length:
                raise PersistenceError(f"{cls.value} bucket has size {group.size}, expected {size_length} components")
            for component in group.size:
                writer.write_u32(component)
            writer.write_u32(len(group.image_ids))
            for image_id in group.image_ids:
                writer.write_u32(image_id)

    if extension is not None:
        extension(writer)


def read_scan(
    stream: BinaryIO,
    extension: Optional[Callable[[ScanReader], None]] = None,
) -> ScanSnapshot:
    """
    Read a scan file written by ``write_scan``.

    Raises:
        PersistenceError: If the stream is not a valid scan file
    """
    magic = stream.read(len(MAGIC))
    if magic != MAGIC:
        raise PersistenceError("not a scan file (bad magic)")

    reader = ScanReader(stream)
    version = reader.read_u32()
    if version != FORMAT_VERSION:
        raise PersistenceError(f"unsupported scan file version {version}")

    snapshot = ScanSnapshot(directory=reader.read_string(), dataset_name=reader.read_string())
    snapshot.files = [_read_file_record(reader) for _ in range(reader.read_u32())]
    snapshot.images = [_read_image_record(reader) for _ in range(reader.read_u32())]

    for image in snapshot.images:
        if image.file_end < image.file_start or image.file_end > len(snapshot.files):
            raise PersistenceError(
                f"image file range [{image.file_start}, {image.file_end}) outside {len(snapshot.files)} files"
            )

    for cls, size_length in BUCKET_TABLES:
        groups = []
        for _ in range(reader.read_u32()):
            size = tuple(reader.read_u32() for _ in range(size_length))
            image_ids = [reader.read_u32() for _ in range(reader.read_u32())]
            if any(image_id >= len(snapshot.images) for image_id in image_ids):
                raise PersistenceError(f"{cls.value} bucket references an unknown image id")
            groups.append(GridBucket(size=size, image_ids=image_ids))
        snapshot.buckets[cls] = groups

    if extension is not None:
        extension(reader)

    return snapshot


def save_scan(
    path: Union[str, Path],
    snapshot: ScanSnapshot,
    extension: Optional[Callable[[ScanWriter], None]] = None,
) -> None:
    """Write a scan file, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        write_scan(f, snapshot, extension)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Saved scan of {len(snapshot.images)} images to {path}")


def load_scan(
    path: Union[str, Path],
    extension: Optional[Callable[[ScanReader], None]] = None,
) -> ScanSnapshot:
    """
    Load a scan file.

    Raises:
        FileNotFoundError: If the file does not exist
        PersistenceError: If the file is not a valid scan file
    """
    with open(path, "rb") as f:
        return read_scan(f, extension)
