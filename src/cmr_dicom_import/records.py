"""Scan result data model: per-file records, per-image records and grid buckets."""

from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np


def _zero_vec3() -> np.ndarray:
    return np.zeros(3, dtype=np.float64)


@dataclass
class FileRecord:
    """One physical slice file."""

    filename: str = ""
    instance_number: int = 0
    study_instance_uid: str = ""
    series_instance_uid: str = ""
    sequence_name: str = ""
    protocol_name: str = ""
    slice_location: float = 0.0
    acquisition_time: float = 0.0
    image_position_patient: np.ndarray = field(default_factory=_zero_vec3)
    # Grouping keys used by the brute-force scan only (not persisted)
    study_description: str = ""
    series_description: str = ""
    image_type: str = ""

    def run_key(self) -> Tuple[str, ...]:
        """Key shared by all files that belong to one acquisition run."""
        return (
            self.series_instance_uid,
            self.sequence_name,
            self.study_instance_uid,
            self.protocol_name,
            self.study_description,
            self.series_description,
            self.image_type,
        )

    def position_key(self) -> Tuple[float, float, int]:
        return (self.slice_location, self.acquisition_time, self.instance_number)


@dataclass
class ImageRecord:
    """
    One reconstructed volume: the half-open range [file_start, file_end) of
    the ordered file list plus everything aggregated from those files.
    """

    file_start: int = 0
    file_end: int = 0

    n_dimensions: int = 0
    rows: int = 0
    columns: int = 0
    slices: int = 0
    temporal_positions: int = 0
    number_of_frames: int = 0

    row_spacing: float = 0.0
    col_spacing: float = 0.0
    slice_spacing: float = 0.0
    temporal_resolution: float = 0.0

    samples_per_pixel: int = 0
    bits_allocated: int = 0
    bits_stored: int = 0
    high_bit: int = -1
    largest_image_pixel_value: float = 0.0

    patient_name: str = ""
    patient_id: str = ""
    patient_sex: str = ""
    patient_birth_date: str = ""
    patient_age: int = 0
    patient_weight: float = 0.0
    patient_position: str = ""

    sequence_name: str = ""
    sequence_name_private: str = ""
    modality: str = ""
    study_description: str = ""
    series_description: str = ""
    protocol_name: str = ""
    acquisition_date: str = ""
    institution_name: str = ""
    study_instance_uid: str = ""
    series_instance_uid: str = ""

    image_orientation_patient_x: np.ndarray = field(default_factory=_zero_vec3)
    image_orientation_patient_y: np.ndarray = field(default_factory=_zero_vec3)
    world_matrix: np.ndarray = field(default_factory=lambda: np.eye(4, dtype=np.float64))

    @property
    def num_files(self) -> int:
        return self.file_end - self.file_start

    @property
    def expected_num_files(self) -> int:
        return max(self.slices, 1) * max(self.temporal_positions, 1)

    @property
    def grid_size(self) -> Tuple[int, int, int, int]:
        return (self.columns, self.rows, self.slices, self.temporal_positions)

    @property
    def any_sequence_name(self) -> str:
        return self.sequence_name or self.sequence_name_private

    def count_dimensions(self) -> int:
        """Number of axes (columns, rows, slices, time) with more than one sample."""
        return sum(1 for size in self.grid_size if size > 1)


@dataclass
class GridBucket:
    """Image ids that share one exact grid size."""

    size: Tuple[int, ...]
    image_ids: List[int] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.image_ids)
