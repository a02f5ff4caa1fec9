"""
Command implementations for cmr-dicom-import.

Each command takes the parsed arguments and a logger and returns an exit
code, so the Click layer stays a thin wrapper.
"""

import logging
from pathlib import Path

from .classification import ImageClass
from .constants import DEFAULT_MAX_WORKERS
from .grid import DimensionClass
from .scan_cache import (
    get_cache_directory,
    get_cache_path,
    image_table,
    iterate_cached_scans,
    load_or_import,
)


SUPPORTED_TABLE_FORMATS = {"parquet", "csv"}

_CLASS_TITLES = {
    DimensionClass.IMAGE_2D: "2D",
    DimensionClass.IMAGE_2DT: "2D+T",
    DimensionClass.IMAGE_3D: "3D",
    DimensionClass.IMAGE_3DT: "3D+T",
}


def setup_logging(verbose=False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.WARNING
    format_str = '%(levelname)s: %(message)s' if not verbose else '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    logging.basicConfig(
        level=level,
        format=format_str
    )


def _split_format_prefix(output_value: str):
    """Return (format, path) if the value uses format:path syntax."""
    if not output_value:
        return None, None

    if ":" not in output_value:
        return None, output_value

    prefix, path = output_value.split(":", 1)
    if prefix in SUPPORTED_TABLE_FORMATS and path:
        return prefix, path

    return None, output_value


def _infer_format_from_suffix(path: Path):
    """Infer table export format based on file suffix."""
    suffix = path.suffix.lower()
    if suffix == ".parquet":
        return "parquet"
    if suffix in (".csv", ".txt"):
        return "csv"
    return None


def _resolve_table_output(output_value, logger):
    """Determine requested format/path for a table export, or None on error."""
    prefix_format, path_str = _split_format_prefix(output_value)
    output_path = Path(path_str)
    target_format = prefix_format or _infer_format_from_suffix(output_path) or "parquet"

    if target_format not in SUPPORTED_TABLE_FORMATS:
        logger.error(f"Unsupported output format: {target_format}")
        return None

    return (target_format, output_path)


def _write_table(importer, output_value, logger):
    resolved = _resolve_table_output(output_value, logger)
    if resolved is None:
        return False

    target_format, output_path = resolved
    table = image_table(importer)
    if output_path.parent and not output_path.parent.exists():
        output_path.parent.mkdir(parents=True, exist_ok=True)

    if target_format == "csv":
        table.write_csv(output_path)
    else:
        table.write_parquet(output_path)

    logger.info(f"Wrote {table.height} image rows to {output_path} ({target_format})")
    return True


def _load_importer(args, logger, cmr=False):
    """Import (or load from cache) the directory named by args.directory."""
    directory = Path(args.directory)
    if not directory.is_dir():
        logger.error(f"Not a directory: {directory}")
        return None

    return load_or_import(
        str(directory),
        cache_dir=getattr(args, "cache_dir", None),
        use_cache=not getattr(args, "no_cache", False),
        force_rebuild=getattr(args, "rebuild", False),
        cmr=cmr,
        logger_instance=logger,
        max_workers=getattr(args, "workers", None) or DEFAULT_MAX_WORKERS,
    )


def _format_grid(size):
    return " x ".join(str(v) for v in size)


def _print_summary(importer):
    print(f"Directory: {importer.directory}")
    if importer.dataset_name:
        print(f"Dataset:   {importer.dataset_name}")
    print(f"Files:     {len(importer.files)}")
    print(f"Images:    {importer.num_images}")

    for cls, title in _CLASS_TITLES.items():
        buckets = importer.buckets(cls)
        if not buckets:
            continue
        print(f"{title} groups: {len(buckets)}")
        for index, bucket in enumerate(buckets):
            ids = ", ".join(str(i) for i in bucket.image_ids)
            print(f"  [{index}] {_format_grid(bucket.size)}: {ids}")


def scan_command(args, logger):
    """Import a directory and print a summary of its images."""
    try:
        importer = _load_importer(args, logger)
        if importer is None:
            return 1

        _print_summary(importer)

        if getattr(args, "output", None):
            if not _write_table(importer, args.output, logger):
                return 1
        return 0

    except Exception as e:
        logger.exception(f"Error: {e}")
        return 1


def info_command(args, logger):
    """Print the PATIENT / SCAN / IMAGE report of some or all images."""
    try:
        importer = _load_importer(args, logger)
        if importer is None:
            return 1

        image_ids = list(args.image_ids) if args.image_ids else list(range(importer.num_images))
        for image_id in image_ids:
            if not 0 <= image_id < importer.num_images:
                logger.error(f"Image id {image_id} out of range (0..{importer.num_images - 1})")
                return 1

        for image_id in image_ids:
            importer.print_image_infos(image_id)
        return 0

    except Exception as e:
        logger.exception(f"Error: {e}")
        return 1


def classify_command(args, logger):
    """
    Detect the flow images of every 3D+T group and print the image roles.

    2D+T images without temporal resolution get one derived from the
    heartbeat of the 3D+T images. The updated scan is written back to the
    cache unless caching is disabled.
    """
    try:
        importer = _load_importer(args, logger, cmr=True)
        if importer is None:
            return 1

        if getattr(args, "ordering", None):
            importer.set_flow_image_ordering(args.ordering)
        if getattr(args, "venc_3dt", None) is not None:
            importer.set_venc_3dt_in_m_per_s(args.venc_3dt)
        if getattr(args, "venc_2dt", None) is not None:
            importer.set_venc_2dt_in_m_per_s(args.venc_2dt)

        triplets = importer.determine_flow_images(
            corner_portion=args.corner_portion,
            max_workers=getattr(args, "workers", None) or DEFAULT_MAX_WORKERS,
        )
        heartbeat = importer.guess_2dt_from_4dt_temporal_resolution()

        print(f"Flow image triplets: {len(triplets)}")
        flow_ids = importer.class_3dt_flow_images()
        if flow_ids:
            print(f"3D+T flow images (x, y, z; {importer.flow_image_ordering.value}): {flow_ids}")
        for image_class in ImageClass:
            if image_class == ImageClass.FlowImage_3DT:
                continue
            ids = importer.ids_of_image_class(image_class)
            if ids:
                print(f"{image_class.label}: {ids}")
        print(f"VENC 3D+T: {importer.venc_3dt_in_m_per_s:g} m/s")
        print(f"VENC 2D+T: {importer.venc_2dt_in_m_per_s:g} m/s")
        if heartbeat > 0:
            print(f"Average heartbeat: {heartbeat:.1f} ms")

        if not getattr(args, "no_cache", False):
            cache_path = get_cache_path(importer.directory, get_cache_directory(getattr(args, "cache_dir", None)))
            if not importer.save(cache_path):
                logger.warning(f"Could not update cached scan at {cache_path}")

        if getattr(args, "output", None):
            if not _write_table(importer, args.output, logger):
                return 1
        return 0

    except ValueError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"Error: {e}")
        return 1


def export_bytes_command(args, logger):
    """Write the concatenated raw pixel buffers of one image to a file."""
    try:
        importer = _load_importer(args, logger)
        if importer is None:
            return 1

        if not 0 <= args.image_id < importer.num_images:
            logger.error(f"Image id {args.image_id} out of range (0..{importer.num_images - 1})")
            return 1

        output_path = Path(args.output)
        if output_path.parent and not output_path.parent.exists():
            output_path.parent.mkdir(parents=True, exist_ok=True)

        if not importer.save_image_bytes(args.image_id, output_path):
            logger.error(f"Could not write {output_path}")
            return 1

        logger.info(f"Saved raw bytes of image {args.image_id} to {output_path}")
        return 0

    except Exception as e:
        logger.exception(f"Error: {e}")
        return 1


def clear_cache_command(args, logger):
    """Delete cached scans for specified directories or all cached entries."""
    try:
        cache_dir = Path(args.cache_dir) if getattr(args, 'cache_dir', None) else get_cache_directory()

        if args.all:
            if args.directories:
                logger.error("--all cannot be combined with explicit directory arguments")
                return 1

            cached = iterate_cached_scans(cache_dir)
            if not cached:
                logger.info("No cached scans found")
                return 0

            removed = 0
            for _key, path in cached:
                if path.exists():
                    path.unlink()
                    removed += 1
                    if args.verbose:
                        logger.info(f"Deleted {path}")

            logger.info(f"Removed {removed} cached scans from {cache_dir}")
            return 0

        if not args.directories:
            logger.error("Specify one or more DIRECTORY arguments or use --all")
            return 1

        removed = 0
        for directory in args.directories:
            scan_path = get_cache_path(directory, cache_dir)
            if scan_path.exists():
                scan_path.unlink()
                removed += 1
                if args.verbose:
                    logger.info(f"Deleted {scan_path}")
            else:
                logger.warning(f"No cached scan found for {directory}")

        if removed == 0:
            logger.warning("No scans were removed")
        else:
            logger.info(f"Removed {removed} cached scans")
        return 0

    except Exception as e:
        logger.exception(f"Error clearing scan cache: {e}")
        return 1
