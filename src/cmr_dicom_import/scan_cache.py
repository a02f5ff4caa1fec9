"""
On-disk cache of imported scans.

Importing a large study directory reads every file, so the scan result is
saved to a binary scan file and reused on the next run.

Cache directory resolution (in order of precedence):
1. --cache-dir CLI argument
2. CMR_DICOM_IMPORT_CACHE_DIR environment variable
3. Default: {platformdirs.user_cache_dir("cmr-dicom-import")}/scans/

Scan files are named after the SHA-1 of the normalized source directory.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

import polars as pl
from platformdirs import user_cache_dir

from .cmr_importer import DicomDirImporterCMR
from .constants import CACHE_APP_NAME, CACHE_ENV_VAR, CACHE_SUBDIR, CACHE_SUFFIX
from .grid import classify_dimensions
from .importer import DicomDirImporter
from .scanner import normalize_directory

logger = logging.getLogger(__name__)


def get_cache_directory(cli_arg: Optional[str] = None) -> Path:
    """
    Resolve cache directory with fallback chain.

    Args:
        cli_arg: Optional directory from --cache-dir CLI argument

    Returns:
        Resolved Path to cache directory (parent, not the scans subdirectory)
    """
    if cli_arg:
        return Path(cli_arg)

    env_var = os.environ.get(CACHE_ENV_VAR)
    if env_var:
        return Path(env_var)

    return Path(user_cache_dir(CACHE_APP_NAME))


def directory_key(directory: str) -> str:
    """SHA-1 hex digest of the absolute, normalized directory path."""
    normalized = normalize_directory(os.path.abspath(str(directory)))
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


def get_cache_path(directory: str, cache_dir: Optional[Path] = None) -> Path:
    """
    Get full path to the scan file of a directory.

    Returns:
        Path ({cache_dir}/scans/{sha1}_scan.bin)
    """
    if cache_dir is None:
        cache_dir = get_cache_directory()
    return Path(cache_dir) / CACHE_SUBDIR / f"{directory_key(directory)}{CACHE_SUFFIX}"


def iterate_cached_scans(cache_dir: Optional[Path] = None) -> list[tuple[str, Path]]:
    """Return (directory key, scan path) pairs for every cached scan."""
    base_dir = Path(cache_dir) if cache_dir else get_cache_directory()
    scans_dir = base_dir / CACHE_SUBDIR
    if not scans_dir.exists():
        return []

    pairs = []
    for scan_file in sorted(scans_dir.glob(f"*{CACHE_SUFFIX}")):
        pairs.append((scan_file.name[:-len(CACHE_SUFFIX)], scan_file))
    return pairs


def load_or_import(
    directory: str,
    *,
    cache_dir: Optional[str] = None,
    use_cache: bool = True,
    force_rebuild: bool = False,
    cmr: bool = True,
    logger_instance: Optional[logging.Logger] = None,
    **importer_kwargs,
) -> Optional[DicomDirImporter]:
    """
    Load a cached scan of a directory, or import it and cache the result.

    Args:
        directory: DICOM directory
        cache_dir: Optional cache directory (None to use defaults)
        use_cache: If False, always import and do not write a scan file
        force_rebuild: Re-import even if a cached scan exists
        cmr: Create a DicomDirImporterCMR instead of a plain DicomDirImporter
        logger_instance: Logger instance (uses module logger if None)
        **importer_kwargs: Passed to the importer constructor

    Returns:
        Importer holding the scan, or None if the directory has no images
    """
    log = logger_instance or logger
    importer_cls = DicomDirImporterCMR if cmr else DicomDirImporter
    importer = importer_cls(directory, **importer_kwargs)

    cache_path = get_cache_path(directory, get_cache_directory(cache_dir))

    if use_cache and not force_rebuild and cache_path.exists():
        log.debug(f"Loading cached scan from: {cache_path}")
        if importer.load(cache_path):
            # The cache may have been written for the same directory under another spelling
            importer.set_directory(directory)
            log.info(f"Scan loaded: {importer.num_images} images")
            return importer

        log.warning(f"Discarding unreadable cached scan {cache_path}")
        try:
            cache_path.unlink()
        except FileNotFoundError:
            pass

    if force_rebuild and cache_path.exists():
        log.info(f"Rebuilding scan of {directory}: removing cached file")
        try:
            cache_path.unlink()
        except FileNotFoundError:
            pass

    if not importer.import_():
        log.error(f"No images found in {directory}")
        return None

    if use_cache:
        if importer.save(cache_path):
            log.info(f"Scan saved to {cache_path}")
        else:
            log.warning(f"Could not cache scan at {cache_path}")

    return importer


def image_table(importer: DicomDirImporter) -> pl.DataFrame:
    """
    One row per image record.

    The ``role`` column holds the semantic role when the importer has
    classified the image, else null.
    """
    rows = []
    for image_id in range(importer.num_images):
        info = importer.image_infos(image_id)
        classified = classify_dimensions(info)

        role = None
        if isinstance(importer, DicomDirImporterCMR):
            image_class = importer.class_of(image_id)
            role = image_class.label if image_class is not None else None

        rows.append({
            "image_id": image_id,
            "dimension_class": classified[0].value if classified else None,
            "role": role,
            "num_files": info.num_files,
            "columns": info.columns,
            "rows": info.rows,
            "slices": info.slices,
            "temporal_positions": info.temporal_positions,
            "col_spacing": info.col_spacing,
            "row_spacing": info.row_spacing,
            "slice_spacing": info.slice_spacing,
            "temporal_resolution": info.temporal_resolution,
            "bits_allocated": info.bits_allocated,
            "bits_stored": info.bits_stored,
            "modality": info.modality,
            "patient_name": info.patient_name,
            "study_description": info.study_description,
            "series_description": info.series_description,
            "protocol_name": info.protocol_name,
            "sequence_name": info.any_sequence_name,
            "series_instance_uid": info.series_instance_uid,
        })

    schema = {
        "image_id": pl.UInt32,
        "dimension_class": pl.Utf8,
        "role": pl.Utf8,
        "num_files": pl.UInt32,
        "columns": pl.UInt32,
        "rows": pl.UInt32,
        "slices": pl.UInt32,
        "temporal_positions": pl.UInt32,
        "col_spacing": pl.Float64,
        "row_spacing": pl.Float64,
        "slice_spacing": pl.Float64,
        "temporal_resolution": pl.Float64,
        "bits_allocated": pl.UInt32,
        "bits_stored": pl.UInt32,
        "modality": pl.Utf8,
        "patient_name": pl.Utf8,
        "study_description": pl.Utf8,
        "series_description": pl.Utf8,
        "protocol_name": pl.Utf8,
        "sequence_name": pl.Utf8,
        "series_instance_uid": pl.Utf8,
    }
    return pl.DataFrame(rows, schema=schema)
