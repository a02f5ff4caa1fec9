"""
Directory scanning.

Two strategies produce the ordered file list and the first-pass image list:

- DICOMDIR: walk the directory records of a DICOMDIR index. STUDY and SERIES
  records set the context; each run of IMAGE records becomes one image (or
  several, see ``assembler.build_image_records``).
- Brute force: read every file, stable-sort the records by their series keys
  and let the assembler cut the runs.

The DICOMDIR strategy is tried first when the directory has one; any problem
with the index falls back to brute force.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .assembler import (
    assemble_images,
    build_image_records,
    resolve_missing_counts,
    sort_files_by_scan_keys,
)
from .constants import (
    DEFAULT_MAX_WORKERS,
    DICOMDIR_FILENAME,
    DICOMDIR_MEDIA_STORAGE_SOP_CLASS_UID,
)
from .decoder import DecoderFactory, open_decoder, value_to_string
from .file_metadata import extract_file_record, fill_position_fields, probe_image_counts
from .progress import NullProgress, ProgressSink
from .records import FileRecord, ImageRecord
from .workers import optimal_workers

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Ordered file records and the image records cut from them."""

    files: List[FileRecord] = field(default_factory=list)
    images: List[ImageRecord] = field(default_factory=list)
    strategy: str = ""

    def __bool__(self) -> bool:
        return bool(self.files) and bool(self.images)


def normalize_directory(directory: str) -> str:
    """Use forward slashes and end with exactly one trailing slash."""
    directory = str(directory).replace("\\", "/")
    if not directory.endswith("/"):
        directory += "/"
    return directory


def list_directory_files(directory: str) -> List[str]:
    """Return every file below ``directory`` (recursively), sorted by path."""
    paths = []
    for root, _dirs, names in os.walk(directory):
        for name in names:
            paths.append(os.path.join(root, name).replace("\\", "/"))
    paths.sort()
    return paths


def find_dicomdir(paths: List[str]) -> Optional[str]:
    for path in paths:
        if os.path.basename(path).lower() == DICOMDIR_FILENAME:
            return path
    return None


def scan_directory(
    directory: str,
    decoder_factory: DecoderFactory = open_decoder,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: Optional[ProgressSink] = None,
) -> ScanResult:
    """
    Scan a directory into file and image records.

    Args:
        directory: Directory containing the DICOM files
        decoder_factory: Opens a file for tag lookup
        max_workers: Threads used to read files during a brute-force scan
        progress: Optional progress sink

    Returns:
        ScanResult; empty if nothing readable was found
    """
    directory = normalize_directory(directory)
    paths = list_directory_files(directory)
    if not paths:
        logger.warning(f"No files found in {directory}")
        return ScanResult()

    dicomdir = find_dicomdir(paths)
    if dicomdir is not None:
        result = scan_dicomdir(dicomdir, directory, decoder_factory, progress)
        if result:
            return result
        logger.info(f"DICOMDIR {dicomdir} could not be used, scanning all files instead")

    return scan_brute_force(paths, decoder_factory, max_workers, progress)


def scan_brute_force(
    paths: List[str],
    decoder_factory: DecoderFactory = open_decoder,
    max_workers: int = DEFAULT_MAX_WORKERS,
    progress: Optional[ProgressSink] = None,
) -> ScanResult:
    """
    Read every file, sort the records and assemble images.

    Files that cannot be read, have no image rows, or are DICOMDIR indices
    are skipped. Records with equal sort keys keep the order of ``paths``.
    """
    progress = progress or NullProgress()
    candidates = [p for p in paths if os.path.basename(p).lower() != DICOMDIR_FILENAME]
    task = progress.emit_task(len(candidates), "Scanning DICOM files")

    def read_single(path: str) -> Optional[FileRecord]:
        decoder = decoder_factory(path, stop_before_pixels=True)
        if decoder is None:
            logger.warning(f"Could not read file {path}")
            return None
        if not decoder.has_tag("Rows"):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Skipping {path}: no image data")
            return None
        return extract_file_record(decoder, path)

    records: Dict[int, FileRecord] = {}
    workers = optimal_workers(len(candidates), max_workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(read_single, path): i for i, path in enumerate(candidates)}
        for future in as_completed(futures):
            i = futures[future]
            try:
                record = future.result()
            except Exception as e:
                logger.error(f"Error scanning {candidates[i]}: {e}")
                record = None
            if record is not None:
                records[i] = record
            task.increment(1)
    task.set_finished()

    files = [records[i] for i in sorted(records)]
    if not files:
        logger.warning("No DICOM image files were found")
        return ScanResult(strategy="brute_force")

    sort_files_by_scan_keys(files)
    images = assemble_images(files, decoder_factory, progress)

    logger.info(f"Brute-force scan found {len(files)} files in {len(images)} images")
    return ScanResult(files=files, images=images, strategy="brute_force")


def _record_string(item, keyword: str) -> str:
    if keyword not in item:
        return ""
    return value_to_string(item[keyword].value)


def _is_directory_storage(dataset) -> bool:
    file_meta = getattr(dataset, "file_meta", None)
    if file_meta is None or "MediaStorageSOPClassUID" not in file_meta:
        return False
    return str(file_meta.MediaStorageSOPClassUID).strip() == DICOMDIR_MEDIA_STORAGE_SOP_CLASS_UID


def scan_dicomdir(
    dicomdir_path: str,
    directory: str,
    decoder_factory: DecoderFactory = open_decoder,
    progress: Optional[ProgressSink] = None,
) -> Optional[ScanResult]:
    """
    Build file and image records from the directory records of a DICOMDIR.

    Args:
        dicomdir_path: Path of the DICOMDIR file
        directory: Root directory that referenced file IDs are relative to
        decoder_factory: Opens a file for tag lookup
        progress: Optional progress sink

    Returns:
        ScanResult, or None if the file is not a usable directory index
    """
    progress = progress or NullProgress()
    directory = normalize_directory(directory)

    index = decoder_factory(dicomdir_path, stop_before_pixels=True)
    dataset = getattr(index, "dataset", None)
    if dataset is None:
        logger.warning(f"Could not read DICOMDIR {dicomdir_path}")
        return None
    if not _is_directory_storage(dataset):
        logger.warning(f"{dicomdir_path} is not a media storage directory")
        return None
    if "DirectoryRecordSequence" not in dataset:
        logger.warning(f"{dicomdir_path} has no directory records")
        return None

    items = dataset.DirectoryRecordSequence
    task = progress.emit_task(len(items), "Scanning DICOMDIR")

    files: List[FileRecord] = []
    images: List[ImageRecord] = []
    context = {"study": "", "series": "", "protocol": ""}
    run_start = 0

    def flush_run() -> None:
        start, end = run_start, len(files)
        if end <= start:
            return
        template = ImageRecord(
            study_instance_uid=context["study"],
            series_instance_uid=context["series"],
            protocol_name=context["protocol"],
            sequence_name=files[start].sequence_name,
        )
        counts = probe_image_counts(decoder_factory(files[start].filename, stop_before_pixels=True))
        counts = resolve_missing_counts(files, start, end, counts, decoder_factory)
        images.extend(build_image_records(files, start, end, counts, template))

    for item in items:
        record_type = _record_string(item, "DirectoryRecordType").upper()

        if record_type != "IMAGE":
            flush_run()
            run_start = len(files)
            if record_type == "STUDY":
                context["study"] = _record_string(item, "StudyInstanceUID")
            elif record_type == "SERIES":
                context["series"] = _record_string(item, "SeriesInstanceUID")
                context["protocol"] = _record_string(item, "ProtocolName")
            task.increment(1)
            continue

        file_id = _record_string(item, "ReferencedFileID").replace("\\", "/")
        record = FileRecord(
            filename=directory + file_id,
            study_instance_uid=context["study"],
            series_instance_uid=context["series"],
            protocol_name=context["protocol"],
        )

        decoder = decoder_factory(record.filename, stop_before_pixels=True) if file_id else None
        if decoder is None:
            logger.warning(f"Could not read file {record.filename} referenced by DICOMDIR")
        else:
            record.sequence_name = decoder.string_value("SequenceName")
            fill_position_fields(record, decoder)

        files.append(record)
        task.increment(1)

    flush_run()
    task.set_finished()

    if not files or not images:
        logger.warning(f"DICOMDIR {dicomdir_path} references no images")
        return None

    logger.info(f"DICOMDIR scan found {len(files)} files in {len(images)} images")
    return ScanResult(files=files, images=images, strategy="dicomdir")
