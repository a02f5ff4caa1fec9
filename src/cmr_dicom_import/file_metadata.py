"""
Per-file metadata extraction.

Reads the tags the importer needs from one DICOM file into a FileRecord and
resolves the slice and temporal counts of an acquisition run. Counts are
resolved through an ordered list of tags per manufacturer; the first tag that
is present wins.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .constants import PHILIPS_NUMBER_OF_PHASES_TAG, PHILIPS_NUMBER_OF_SLICES_TAG
from .decoder import DicomFileDecoder, TagLike
from .records import FileRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManufacturerStrategy:
    """Tags consulted, in order, for the slice and temporal counts of a run."""

    slice_count_tags: Tuple[TagLike, ...]
    temporal_count_tags: Tuple[TagLike, ...]


DEFAULT_STRATEGY = ManufacturerStrategy(
    slice_count_tags=("NumberOfSlices",),
    temporal_count_tags=("CardiacNumberOfImages", "NumberOfTemporalPositions"),
)

# Keyed by a lower-case substring of the Manufacturer tag
MANUFACTURER_STRATEGIES = {
    "philips": ManufacturerStrategy(
        slice_count_tags=(PHILIPS_NUMBER_OF_SLICES_TAG,),
        temporal_count_tags=("CardiacNumberOfImages", PHILIPS_NUMBER_OF_PHASES_TAG),
    ),
}


@dataclass
class ImageCounts:
    """Counts probed from the first file of a run; None where unknown."""

    slices: Optional[int] = None
    temporal_positions: Optional[int] = None
    number_of_frames: Optional[int] = None


def parse_float(text: str) -> float:
    try:
        return float(text)
    except (TypeError, ValueError):
        return 0.0


def parse_int(text: str) -> int:
    """Parse the leading integer of a string ("045Y" -> 45); 0 if there is none."""
    text = (text or "").strip()
    digits = ""
    for i, ch in enumerate(text):
        if ch.isdigit() or (i == 0 and ch in "+-"):
            digits += ch
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return int(parse_float(text))


def parse_vector(text: str, size: int) -> Optional[np.ndarray]:
    """Split a backslash (or slash) separated string into a float vector of ``size``."""
    if not text:
        return None
    parts = text.split("\\") if "\\" in text else text.split("/")
    if len(parts) != size:
        return None
    return np.array([parse_float(p) for p in parts], dtype=np.float64)


def parse_acquisition_time(text: str) -> float:
    """
    Convert a DICOM time string "hhmmss.ffffff" to milliseconds since midnight.

    Missing components count as zero, so "" maps to 0.
    """
    text = (text or "").strip()
    hours = parse_float(text[0:2])
    minutes = parse_float(text[2:4])
    seconds = parse_float(text[4:13])
    return hours * 3_600_000 + minutes * 60_000 + seconds * 1_000


def manufacturer_strategy(decoder: DicomFileDecoder) -> ManufacturerStrategy:
    manufacturer = decoder.string_value("Manufacturer").lower()
    for key, strategy in MANUFACTURER_STRATEGIES.items():
        if key in manufacturer:
            return strategy
    return DEFAULT_STRATEGY


def resolve_count(decoder: DicomFileDecoder, tags: Sequence[TagLike]) -> Optional[int]:
    """Return the integer value of the first present tag, or None if none is present."""
    for tag in tags:
        if decoder.has_tag(tag):
            return parse_int(decoder.string_value(tag))
    return None


def resolve_slice_count(decoder: DicomFileDecoder) -> Optional[int]:
    return resolve_count(decoder, manufacturer_strategy(decoder).slice_count_tags)


def resolve_temporal_count(decoder: DicomFileDecoder) -> Optional[int]:
    return resolve_count(decoder, manufacturer_strategy(decoder).temporal_count_tags)


def probe_image_counts(decoder: Optional[DicomFileDecoder]) -> ImageCounts:
    """Read slice, temporal and frame counts from the first file of a run."""
    if decoder is None:
        return ImageCounts()
    return ImageCounts(
        slices=resolve_slice_count(decoder),
        temporal_positions=resolve_temporal_count(decoder),
        number_of_frames=resolve_count(decoder, ("NumberOfFrames",)),
    )


def acquisition_time_of(decoder: DicomFileDecoder) -> float:
    return parse_acquisition_time(decoder.string_value("AcquisitionTime"))


def slice_position_of(decoder: DicomFileDecoder, file_index: int) -> Optional[float]:
    """
    Position of a file along the slice axis, used only to count slices.

    Files without SliceLocation but with a slice spacing contribute their
    file index instead; files with neither contribute nothing.
    """
    if decoder.has_tag("SliceLocation"):
        return parse_float(decoder.string_value("SliceLocation"))
    if decoder.has_tag("SpacingBetweenSlices") or decoder.has_tag("SliceThickness"):
        return float(file_index)
    return None


def count_distinct(values: List[float]) -> int:
    return len(set(values))


def extract_file_record(decoder: DicomFileDecoder, filename: str) -> FileRecord:
    """Build a FileRecord from the tags of one file."""
    record = FileRecord(
        filename=filename,
        instance_number=max(parse_int(decoder.string_value("InstanceNumber")), 0),
        study_instance_uid=decoder.string_value("StudyInstanceUID"),
        series_instance_uid=decoder.string_value("SeriesInstanceUID"),
        sequence_name=decoder.string_value("SequenceName"),
        protocol_name=decoder.string_value("ProtocolName"),
        slice_location=parse_float(decoder.string_value("SliceLocation")),
        acquisition_time=acquisition_time_of(decoder),
        study_description=decoder.string_value("StudyDescription"),
        series_description=decoder.string_value("SeriesDescription"),
        image_type=decoder.string_value("ImageType"),
    )

    position = parse_vector(decoder.string_value("ImagePositionPatient"), 3)
    if position is not None:
        record.image_position_patient = position

    return record


def fill_position_fields(record: FileRecord, decoder: DicomFileDecoder) -> None:
    """Fill slice location, acquisition time and position of a record from its file."""
    record.slice_location = parse_float(decoder.string_value("SliceLocation"))
    record.acquisition_time = acquisition_time_of(decoder)
    if not record.instance_number:
        record.instance_number = max(parse_int(decoder.string_value("InstanceNumber")), 0)
    position = parse_vector(decoder.string_value("ImagePositionPatient"), 3)
    if position is not None:
        record.image_position_patient = position
