"""High-level importer for directories of per-slice DICOM files."""

import io
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, TextIO, Tuple, Union

import numpy as np

from . import block_reader
from .aggregator import scan_image_infos
from .assembler import remove_duplicate_images
from .block_reader import BlockRange
from .constants import DEFAULT_MAX_WORKERS
from .decoder import DecoderFactory, open_decoder
from .grid import DimensionClass, scan_image_dimensions
from .persistence import (
    PersistenceError,
    ScanReader,
    ScanSnapshot,
    ScanWriter,
    load_scan,
    save_scan,
)
from .progress import NullProgress, ProgressSink
from .records import FileRecord, GridBucket, ImageRecord
from .scanner import normalize_directory, scan_directory

logger = logging.getLogger(__name__)


class DicomDirImporter:
    """
    Reconstruct image volumes from a directory of per-slice DICOM files.

    Importing scans the directory, groups the files into image records,
    aggregates their metadata and buckets them by dimensionality and grid
    size. Pixel data is only read on request through the block read API.

    Examples
    --------
    >>> importer = DicomDirImporter("/data/study-0042")
    >>> importer.import_()
    True
    >>> importer.num_image_3dt_groups()
    2
    >>> volume = importer.read_image(importer.image_3dt_group(0)[0])
    """

    def __init__(
        self,
        directory: Optional[str] = None,
        *,
        decoder_factory: Optional[DecoderFactory] = None,
        progress: Optional[ProgressSink] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        """
        Create an importer.

        Parameters
        ----------
        directory : str or None
            Directory to import. Nothing is scanned until ``import_()`` is called.
        decoder_factory : callable or None
            Opens a file as a ``DicomFileDecoder``; defaults to ``open_decoder``.
        progress : ProgressSink or None
            Receives progress of long-running steps.
        max_workers : int, default DEFAULT_MAX_WORKERS
            Threads used for reading files.
        """
        self._decoder_factory = decoder_factory or open_decoder
        self._progress = progress or NullProgress()
        self._max_workers = max_workers

        self._directory = ""
        self._dataset_name = ""
        self._files: List[FileRecord] = []
        self._images: List[ImageRecord] = []
        self._buckets: Dict[DimensionClass, List[GridBucket]] = {cls: [] for cls in DimensionClass}

        if directory is not None:
            self.set_directory(directory)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(directory={self._directory!r}, "
            f"files={len(self._files)}, images={len(self._images)})"
        )

    # ------------------------------------------------------------------
    # Import pipeline
    # ------------------------------------------------------------------

    def import_(self) -> bool:
        """
        Scan the directory and rebuild the whole model.

        Returns
        -------
        bool
            True if at least one file and one image were found.
        """
        self.clear()
        if not self._directory:
            logger.error("No directory set")
            return False

        logger.info(f"Importing DICOM directory {self._directory}")
        result = scan_directory(
            self._directory,
            decoder_factory=self._decoder_factory,
            max_workers=self._max_workers,
            progress=self._progress,
        )
        if not result:
            logger.warning(f"No images found in {self._directory}")
            return False

        self._files = result.files
        self._images = remove_duplicate_images(result.images)
        scan_image_infos(self._images, self._files, self._decoder_factory, self._progress)
        self.scan_image_dimensions()
        self.set_dataset_name_from_patient_name()

        logger.info(
            f"Imported {len(self._files)} files into {len(self._images)} images "
            f"({result.strategy} scan)"
        )
        return self.is_import_successful()

    def scan_image_dimensions(self) -> None:
        """Rebuild the dimensionality buckets from the current image records."""
        self._buckets = scan_image_dimensions(self._images)

    def is_import_successful(self) -> bool:
        return bool(self._files) and bool(self._images)

    def clear(self) -> None:
        """Drop all scan results; the directory is kept."""
        self._files = []
        self._images = []
        self._dataset_name = ""
        self._buckets = {cls: [] for cls in DimensionClass}
        self._clear_extension()

    def _clear_extension(self) -> None:
        """Reset subclass state; called by ``clear``."""

    # ------------------------------------------------------------------
    # Directory and dataset name
    # ------------------------------------------------------------------

    @property
    def directory(self) -> str:
        """Source directory, with forward slashes and a trailing slash."""
        return self._directory

    def set_directory(self, directory: str) -> None:
        """
        Set the source directory and move all file paths onto it.

        Paths below the previous directory keep their relative part; any
        other path keeps only its file name.
        """
        old_directory = self._directory
        self._directory = normalize_directory(directory)

        for record in self._files:
            if not record.filename:
                continue
            if old_directory and record.filename.startswith(old_directory):
                relative = record.filename[len(old_directory):]
            else:
                relative = record.filename.rsplit("/", 1)[-1]
            record.filename = self._directory + relative

    @property
    def dataset_name(self) -> str:
        return self._dataset_name

    def set_dataset_name(self, name: str) -> None:
        """Set the dataset name; empty names are ignored."""
        if name:
            self._dataset_name = name

    def set_dataset_name_from_patient_name(self) -> None:
        for image in self._images:
            if image.patient_name:
                self.set_dataset_name(image.patient_name)
                return

    # ------------------------------------------------------------------
    # Images and files
    # ------------------------------------------------------------------

    @property
    def files(self) -> List[FileRecord]:
        return self._files

    @property
    def num_images(self) -> int:
        return len(self._images)

    def __len__(self) -> int:
        return len(self._images)

    def image_infos(self, image_id: int) -> ImageRecord:
        """
        Return the record of one image.

        Raises
        ------
        IndexError
            If ``image_id`` is not a valid image id.
        """
        if not 0 <= image_id < len(self._images):
            raise IndexError(f"image id {image_id} out of range (0..{len(self._images) - 1})")
        return self._images[image_id]

    def all_image_ids(self) -> List[int]:
        """Ids of all bucketed images: 2D, then 2D+T, 3D and 3D+T, in bucket order."""
        ids = []
        for cls in (DimensionClass.IMAGE_2D, DimensionClass.IMAGE_2DT, DimensionClass.IMAGE_3D, DimensionClass.IMAGE_3DT):
            for bucket in self._buckets[cls]:
                ids.extend(bucket.image_ids)
        return ids

    def dimension_class_of(self, image_id: int) -> Optional[DimensionClass]:
        for cls, buckets in self._buckets.items():
            for bucket in buckets:
                if image_id in bucket.image_ids:
                    return cls
        return None

    # ------------------------------------------------------------------
    # Bucket access
    # ------------------------------------------------------------------

    def buckets(self, cls: DimensionClass) -> List[GridBucket]:
        return self._buckets[DimensionClass(cls)]

    def num_groups(self, cls: DimensionClass) -> int:
        return len(self.buckets(cls))

    def group(self, cls: DimensionClass, index: int) -> List[int]:
        return self._bucket(cls, index).image_ids

    def group_grid_size(self, cls: DimensionClass, index: int) -> Tuple[int, ...]:
        return self._bucket(cls, index).size

    def _bucket(self, cls: DimensionClass, index: int) -> GridBucket:
        buckets = self.buckets(cls)
        if not 0 <= index < len(buckets):
            raise IndexError(f"{DimensionClass(cls).value} group {index} out of range (0..{len(buckets) - 1})")
        return buckets[index]

    def num_image_2d_groups(self) -> int:
        return self.num_groups(DimensionClass.IMAGE_2D)

    def num_image_2dt_groups(self) -> int:
        return self.num_groups(DimensionClass.IMAGE_2DT)

    def num_image_3d_groups(self) -> int:
        return self.num_groups(DimensionClass.IMAGE_3D)

    def num_image_3dt_groups(self) -> int:
        return self.num_groups(DimensionClass.IMAGE_3DT)

    def image_2d_group(self, index: int) -> List[int]:
        return self.group(DimensionClass.IMAGE_2D, index)

    def image_2dt_group(self, index: int) -> List[int]:
        return self.group(DimensionClass.IMAGE_2DT, index)

    def image_3d_group(self, index: int) -> List[int]:
        return self.group(DimensionClass.IMAGE_3D, index)

    def image_3dt_group(self, index: int) -> List[int]:
        return self.group(DimensionClass.IMAGE_3DT, index)

    def image_2d_group_grid_size(self, index: int) -> Tuple[int, ...]:
        return self.group_grid_size(DimensionClass.IMAGE_2D, index)

    def image_2dt_group_grid_size(self, index: int) -> Tuple[int, ...]:
        return self.group_grid_size(DimensionClass.IMAGE_2DT, index)

    def image_3d_group_grid_size(self, index: int) -> Tuple[int, ...]:
        return self.group_grid_size(DimensionClass.IMAGE_3D, index)

    def image_3dt_group_grid_size(self, index: int) -> Tuple[int, ...]:
        return self.group_grid_size(DimensionClass.IMAGE_3DT, index)

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def format_image_infos(self, image_id: int) -> str:
        """Human-readable PATIENT / SCAN / IMAGE report of one image."""
        info = self.image_infos(image_id)
        out = io.StringIO()

        out.write(f"-------------------- ({image_id}) --------------------\n")
        out.write("PATIENT:\n")
        if info.patient_name:
            out.write(f"\tNAME: {info.patient_name}")
            out.write(f" (ID: {info.patient_id})\n" if info.patient_id else "\n")
        elif info.patient_id:
            out.write(f"\tID: {info.patient_id}\n")
        if info.patient_birth_date:
            out.write(f"\tDATE OF BIRTH: {info.patient_birth_date}")
            out.write(f" (AGE {info.patient_age})\n" if info.patient_age else "\n")
        elif info.patient_age:
            out.write(f"\tAGE: {info.patient_age}\n")
        if info.patient_sex:
            out.write(f"\tSEX: {info.patient_sex}\n")
        if info.patient_weight:
            out.write(f"\tWEIGHT: {info.patient_weight:g}\n")
        if info.patient_position:
            out.write(f"\tPOSITION: {info.patient_position}\n")

        out.write("SCAN:\n")
        for label, value in (
            ("MODALITY", info.modality),
            ("ACQUISITION DATE", info.acquisition_date),
            ("INSTITUTION NAME", info.institution_name),
            ("STUDY DESCRIPTION", info.study_description),
            ("SERIES DESCRIPTION", info.series_description),
        ):
            if value:
                out.write(f"\t{label}: {value}\n")
        names = [n for n in (info.sequence_name, info.sequence_name_private) if n]
        if names:
            out.write(f"\tSEQUENCE NAME: {' / '.join(names)}\n")
        if info.protocol_name:
            out.write(f"\tPROTOCOL NAME: {info.protocol_name}\n")

        out.write("IMAGE:\n")
        out.write(
            f"\tGRID SIZE: {info.columns} columns, {info.rows} rows, "
            f"{info.slices} slices, {info.temporal_positions} time steps\n"
        )
        out.write(
            f"\tRESOLUTION: {info.col_spacing:g} x {info.row_spacing:g} x "
            f"{info.slice_spacing:g} x {info.temporal_resolution:g}\n"
        )
        out.write("\tWORLD MATRIX:\n")
        for row in np.asarray(info.world_matrix):
            out.write("\t\t" + " ".join(f"{v: .6g}" for v in row) + "\n")
        return out.getvalue()

    def print_image_infos(self, image_id: int, stream: Optional[TextIO] = None) -> None:
        (stream or sys.stdout).write(self.format_image_infos(image_id))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Union[str, Path]) -> bool:
        """
        Write the scan result to a binary scan file.

        Returns
        -------
        bool
            False if the file could not be written.
        """
        snapshot = ScanSnapshot(
            directory=self._directory,
            dataset_name=self._dataset_name,
            files=self._files,
            images=self._images,
            buckets=self._buckets,
        )
        try:
            save_scan(path, snapshot, self._save_extension)
        except (OSError, PersistenceError) as e:
            logger.error(f"Could not save scan to {path}: {e}")
            return False
        return True

    def load(self, path: Union[str, Path]) -> bool:
        """
        Replace the model with the contents of a scan file.

        The model is left cleared if the file cannot be read.

        Returns
        -------
        bool
            True if the file was loaded.
        """
        self.clear()
        try:
            snapshot = load_scan(path, self._load_extension)
        except (OSError, PersistenceError) as e:
            logger.error(f"Could not load scan from {path}: {e}")
            self.clear()
            return False

        self._directory = snapshot.directory
        self._dataset_name = snapshot.dataset_name
        self._files = snapshot.files
        self._images = snapshot.images
        self._buckets = snapshot.buckets
        logger.info(f"Loaded scan of {len(self._images)} images from {path}")
        return True

    def _save_extension(self, writer: ScanWriter) -> None:
        """Write subclass state after the bucket tables."""

    def _load_extension(self, reader: ScanReader) -> None:
        """Read subclass state written by ``_save_extension``."""

    # ------------------------------------------------------------------
    # Block reading
    # ------------------------------------------------------------------

    def read_image_block(self, image_id: int, x0: int, x1: int, y0: int, y1: int, z0: int, z1: int, t0: int, t1: int) -> np.ndarray:
        """
        Read an inclusive block of pixel values.

        Bounds given in reverse are swapped. The result has one axis for each
        of x, y, z and t whose range spans more than one sample, in that
        order, indexed relative to the range start.

        Returns
        -------
        numpy.ndarray
            float64 block; empty if the block has more axes than the image.
        """
        block = BlockRange.normalized(x0, x1, y0, y1, z0, z1, t0, t1)
        return self._read_block(image_id, block)

    def _read_block(self, image_id: int, block: BlockRange) -> np.ndarray:
        return block_reader.read_image_block(
            self.image_infos(image_id),
            self._files,
            block,
            decoder_factory=self._decoder_factory,
            max_workers=self._max_workers,
        )

    def read_image(self, image_id: int) -> np.ndarray:
        return self._read_block(image_id, BlockRange.full(self.image_infos(image_id)))

    def read_slice_of_4d_image(self, image_id: int, z: int, t: int) -> np.ndarray:
        info = self.image_infos(image_id)
        return self.read_image_block(image_id, 0, max(info.columns, 1) - 1, 0, max(info.rows, 1) - 1, z, z, t, t)

    def read_image_bytes(self, image_id: int) -> bytes:
        """Concatenated raw pixel buffers of all files of an image."""
        return block_reader.read_image_bytes(self.image_infos(image_id), self._files, self._decoder_factory)

    def read_image_from_bytes(self, image_id: int, data: bytes) -> np.ndarray:
        info = self.image_infos(image_id)
        return block_reader.read_image_block_from_bytes(info, data, BlockRange.full(info))

    def read_image_block_from_bytes(
        self, image_id: int, data: bytes, x0: int, x1: int, y0: int, y1: int, z0: int, z1: int, t0: int, t1: int
    ) -> np.ndarray:
        block = BlockRange.normalized(x0, x1, y0, y1, z0, z1, t0, t1)
        return block_reader.read_image_block_from_bytes(self.image_infos(image_id), data, block)

    def save_image_bytes(self, image: Union[int, bytes], path: Union[str, Path]) -> bool:
        """Write the raw bytes of an image (given by id or as bytes) to a file."""
        data = image if isinstance(image, (bytes, bytearray)) else self.read_image_bytes(image)
        return block_reader.save_image_bytes(bytes(data), path)

    @staticmethod
    def load_image_bytes(path: Union[str, Path]) -> bytes:
        return block_reader.load_image_bytes(path)
