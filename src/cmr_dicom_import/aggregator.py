"""
Image info aggregation.

Walks the files of each image once and fills the image record with the first
non-empty value found for every field. Counts that the scan could not
determine are derived from the distinct slice locations and acquisition
times, then the world matrix is composed from the image positions and the
files are re-sorted along the slice axis.
"""

import logging
import re
from typing import List, Optional

import numpy as np

from .assembler import sort_file_range
from .constants import PRIVATE_SEQUENCE_NAME_TAG
from .decoder import DecoderFactory, DicomFileDecoder, open_decoder
from .file_metadata import (
    acquisition_time_of,
    parse_float,
    parse_int,
    parse_vector,
    resolve_count,
    resolve_slice_count,
    resolve_temporal_count,
)
from .progress import NullProgress, ProgressSink
from .records import FileRecord, ImageRecord

logger = logging.getLogger(__name__)

_NAME_REPLACEMENTS = (
    ("^", "_"),
    ("-", "_"),
    ("/", "_"),
    ("\\", "_"),
    (" ", "_"),
    ("ä", "ae"),
    ("ö", "oe"),
    ("ü", "ue"),
    ("ß", "ss"),
)
_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9_]")

# String fields copied verbatim (trimmed) from the tag of the same name
_STRING_FIELDS = (
    ("patient_id", "PatientID"),
    ("patient_sex", "PatientSex"),
    ("patient_birth_date", "PatientBirthDate"),
    ("patient_position", "PatientPosition"),
    ("sequence_name", "SequenceName"),
    ("modality", "Modality"),
    ("study_description", "StudyDescription"),
    ("series_description", "SeriesDescription"),
    ("protocol_name", "ProtocolName"),
    ("acquisition_date", "AcquisitionDate"),
    ("institution_name", "InstitutionName"),
)


def sanitize_patient_name(name: str) -> str:
    """
    Make a patient name usable as a file name.

    Examples:
        >>> sanitize_patient_name("Müller^Hans-Peter")
        'Mueller_Hans_Peter'
    """
    name = name.strip()
    for old, new in _NAME_REPLACEMENTS:
        name = name.replace(old, new)
    return _NAME_DISALLOWED.sub("", name)


def running_mean_interval(times: List[float]) -> float:
    """
    Mean gap between sorted, distinct acquisition times.

    The first gap seeds the mean. A later gap of at least twice the current
    mean is a jump to the next slice and is not counted; the mean is
    re-evaluated after every gap.
    """
    if len(times) < 2:
        return 0.0

    total = 0.0
    count = 0
    mean = 0.0
    for i in range(len(times) - 1):
        gap = times[i + 1] - times[i]
        if count == 0:
            total = gap
            count = 1
            mean = total
            continue
        if gap < 2 * mean:
            total += gap
            count += 1
        mean = total / count
    return mean


def unique_consecutive_positions(positions: List[np.ndarray]) -> List[np.ndarray]:
    result: List[np.ndarray] = []
    for position in positions:
        if result and np.array_equal(result[-1], position):
            continue
        result.append(position)
    return result


def compose_world_matrix(image: ImageRecord, positions: List[np.ndarray]) -> Optional[np.ndarray]:
    """
    Compose the voxel-to-patient matrix of an image.

    The translation is anchored at the last unique position and shifted by half
    a voxel so that voxel centers land on the sample positions. Returns None
    if no positions are known.
    """
    positions = unique_consecutive_positions(positions)
    if not positions:
        return None

    first, last = positions[0], positions[-1]
    iop_x = np.asarray(image.image_orientation_patient_x, dtype=np.float64)
    iop_y = np.asarray(image.image_orientation_patient_y, dtype=np.float64)

    matrix = np.eye(4, dtype=np.float64)
    matrix[:3, 0] = iop_x * image.row_spacing
    matrix[:3, 1] = iop_y * image.col_spacing
    if len(positions) == 1:
        matrix[:3, 2] = np.cross(iop_x, iop_y) * image.slice_spacing
    else:
        matrix[:3, 2] = (first - last) / (len(positions) - 1)
    matrix[:3, 3] = last

    p0 = matrix @ np.array([0.0, 0.0, 0.0, 1.0])
    p1 = matrix @ np.array([1.0, 1.0, 1.0, 1.0])
    correction = (p1[:3] / p1[3] - p0[:3] / p0[3]) * 0.5
    matrix[:3, 3] -= correction
    return matrix


def _fill_from_file(image: ImageRecord, decoder: DicomFileDecoder) -> None:
    if image.rows == 0 or image.columns == 0:
        columns, rows = decoder.image_dimensions()
        if image.rows == 0:
            image.rows = rows
        if image.columns == 0:
            image.columns = columns

    if image.slices == 0:
        image.slices = resolve_slice_count(decoder) or 0
    if image.temporal_positions == 0:
        image.temporal_positions = resolve_temporal_count(decoder) or 0
    if image.number_of_frames == 0:
        image.number_of_frames = resolve_count(decoder, ("NumberOfFrames",)) or 0

    if image.row_spacing == 0 or image.col_spacing == 0:
        spacing = parse_vector(decoder.string_value("PixelSpacing"), 2)
        if spacing is not None:
            image.col_spacing = float(spacing[0])
            image.row_spacing = float(spacing[-1])
    if image.slice_spacing == 0:
        image.slice_spacing = parse_float(decoder.string_value("SpacingBetweenSlices"))
        if image.slice_spacing == 0:
            image.slice_spacing = parse_float(decoder.string_value("SliceThickness"))

    if image.samples_per_pixel == 0:
        image.samples_per_pixel = parse_int(decoder.string_value("SamplesPerPixel"))
    if image.bits_allocated == 0:
        image.bits_allocated = parse_int(decoder.string_value("BitsAllocated"))
    if image.bits_stored == 0:
        image.bits_stored = parse_int(decoder.string_value("BitsStored"))
        image.largest_image_pixel_value = float(2 ** image.bits_stored)
    if image.high_bit == -1 and decoder.has_tag("HighBit"):
        image.high_bit = parse_int(decoder.string_value("HighBit"))

    if not image.image_orientation_patient_x.any() and not image.image_orientation_patient_y.any():
        orientation = parse_vector(decoder.string_value("ImageOrientationPatient"), 6)
        if orientation is not None:
            image.image_orientation_patient_x = orientation[:3].copy()
            image.image_orientation_patient_y = orientation[3:].copy()

    if not image.patient_name and decoder.has_tag("PatientName"):
        image.patient_name = sanitize_patient_name(decoder.string_value("PatientName"))
    if image.patient_age == 0:
        image.patient_age = parse_int(decoder.string_value("PatientAge"))
    if image.patient_weight == 0:
        image.patient_weight = parse_float(decoder.string_value("PatientWeight"))

    for attr, keyword in _STRING_FIELDS:
        if not getattr(image, attr):
            setattr(image, attr, decoder.string_value(keyword))
    if not image.sequence_name_private:
        image.sequence_name_private = decoder.string_value(PRIVATE_SEQUENCE_NAME_TAG)


def _read_temporal_hint(decoder: DicomFileDecoder):
    """Return ("nominal_interval" | "heart_rate", value) or None."""
    if decoder.has_tag("NominalInterval"):
        return "nominal_interval", parse_float(decoder.string_value("NominalInterval"))
    if decoder.has_tag("HeartRate"):
        return "heart_rate", parse_float(decoder.string_value("HeartRate"))
    return None


def aggregate_image_info(
    image: ImageRecord,
    files: List[FileRecord],
    decoder_factory: DecoderFactory = open_decoder,
) -> ImageRecord:
    """
    Fill one image record from the files in its range.

    Slice locations and acquisition times missing on a file record are
    back-filled from the file. The file range is re-sorted along the slice
    direction once the world matrix is known.

    Args:
        image: Image record to complete (modified in place)
        files: The full ordered file list
        decoder_factory: Opens a file for tag lookup

    Returns:
        The same image record
    """
    slice_locations: List[float] = []
    acquisition_times: List[float] = []
    positions: List[np.ndarray] = []
    temporal_hint = None

    for k in range(image.file_start, image.file_end):
        record = files[k]
        if record.slice_location != 0:
            slice_locations.append(record.slice_location)
        if record.acquisition_time != 0:
            acquisition_times.append(record.acquisition_time)
        positions.append(np.asarray(record.image_position_patient, dtype=np.float64))

        decoder = decoder_factory(record.filename, stop_before_pixels=True)
        if decoder is None:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Skipping unreadable file {record.filename}")
            continue

        if record.slice_location == 0 and decoder.has_tag("SliceLocation"):
            record.slice_location = parse_float(decoder.string_value("SliceLocation"))
            slice_locations.append(record.slice_location)
        if record.acquisition_time == 0 and decoder.has_tag("AcquisitionTime"):
            record.acquisition_time = acquisition_time_of(decoder)
            acquisition_times.append(record.acquisition_time)

        if temporal_hint is None or not temporal_hint[1]:
            temporal_hint = _read_temporal_hint(decoder) or temporal_hint
        _fill_from_file(image, decoder)

    if image.slices == 0:
        if slice_locations:
            image.slices = len(set(slice_locations))
        elif image.slice_spacing != 0:
            image.slices = image.num_files

    distinct_times = sorted(set(acquisition_times))
    if image.temporal_positions == 0:
        image.temporal_positions = len(distinct_times)

    image.n_dimensions = image.count_dimensions()

    kind, value = temporal_hint if temporal_hint else (None, 0.0)
    if not value and len(distinct_times) >= 2:
        image.temporal_resolution = running_mean_interval(distinct_times)
    elif value and image.temporal_positions != 0:
        if kind == "nominal_interval":
            image.temporal_resolution = value / image.temporal_positions
        else:
            image.temporal_resolution = 60_000.0 / (value * image.temporal_positions)

    if image.patient_position and image.patient_position.upper() != "HFS":
        logger.warning(
            f"Patient position of image with series {image.series_instance_uid} "
            f"is {image.patient_position}, not HFS"
        )

    matrix = compose_world_matrix(image, positions)
    if matrix is None:
        image.world_matrix = np.eye(4, dtype=np.float64)
        return image

    image.world_matrix = matrix
    direction = matrix[:3, 2]
    norm = np.linalg.norm(direction)
    if norm > 0:
        direction = direction / norm
        anchor = unique_consecutive_positions(positions)[-1]
        for k in range(image.file_start, image.file_end):
            offset = anchor - np.asarray(files[k].image_position_patient, dtype=np.float64)
            files[k].slice_location = float(abs(np.dot(direction, offset)))
        sort_file_range(files, image.file_start, image.file_end)

    return image


def scan_image_infos(
    images: List[ImageRecord],
    files: List[FileRecord],
    decoder_factory: DecoderFactory = open_decoder,
    progress: Optional[ProgressSink] = None,
) -> None:
    """Aggregate every image record in place."""
    progress = progress or NullProgress()
    task = progress.emit_task(len(images), "Scanning DICOM tags")
    for image in images:
        aggregate_image_info(image, files, decoder_factory)
        task.increment(1)
    task.set_finished()
