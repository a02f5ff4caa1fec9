"""
Image assembly: group ordered file records into image records.

A run is a maximal sequence of consecutive files with the same series,
sequence, study, protocol, descriptions and image type. Each run becomes one
image, or several when its length is a multiple of the expected
slices x temporal positions (a split image).
"""

import logging
from copy import deepcopy
from typing import Iterator, List, Optional, Tuple

from .decoder import DecoderFactory, open_decoder
from .file_metadata import (
    ImageCounts,
    acquisition_time_of,
    count_distinct,
    probe_image_counts,
    slice_position_of,
)
from .progress import NullProgress, ProgressSink
from .records import FileRecord, ImageRecord

logger = logging.getLogger(__name__)

SPLIT_SUFFIX = "_"


def sort_file_range(files: List[FileRecord], start: int, end: int) -> None:
    """Stable sort files[start:end] by (slice location, acquisition time, instance number)."""
    files[start:end] = sorted(files[start:end], key=FileRecord.position_key)


def sort_files_by_scan_keys(files: List[FileRecord]) -> None:
    """
    Stable sort all files by series, sequence, study description, series
    description and image type. Files with equal keys keep their input order.
    """
    files.sort(
        key=lambda f: (
            f.series_instance_uid,
            f.sequence_name,
            f.study_description,
            f.series_description,
            f.image_type,
        )
    )


def iter_runs(files: List[FileRecord]) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) of each maximal run of files with equal run keys."""
    start = 0
    while start < len(files):
        key = files[start].run_key()
        end = start + 1
        while end < len(files) and files[end].run_key() == key:
            end += 1
        yield start, end
        start = end


def resolve_missing_counts(
    files: List[FileRecord],
    start: int,
    end: int,
    counts: ImageCounts,
    decoder_factory: DecoderFactory = open_decoder,
) -> ImageCounts:
    """
    Complete unknown slice/temporal counts by scanning every file of a run.

    The number of distinct slice positions (or acquisition times) becomes the
    missing count. A run whose frame count equals its slice count has one
    temporal position. A missing frame count defaults to the run length.
    """
    counts = ImageCounts(counts.slices, counts.temporal_positions, counts.number_of_frames)
    if counts.number_of_frames is None:
        counts.number_of_frames = end - start

    if counts.slices is None or counts.temporal_positions is None:
        slice_positions = []
        acquisition_times = []
        for i in range(start, end):
            decoder = decoder_factory(files[i].filename, stop_before_pixels=True)
            if decoder is None:
                continue
            if counts.slices is None:
                position = slice_position_of(decoder, i)
                if position is not None:
                    slice_positions.append(position)
            if counts.temporal_positions is None:
                acquisition_times.append(acquisition_time_of(decoder))

        if counts.slices is None and slice_positions:
            counts.slices = count_distinct(slice_positions)

        if counts.temporal_positions is None:
            if counts.slices is not None and counts.number_of_frames == counts.slices:
                counts.temporal_positions = 1
            elif acquisition_times:
                counts.temporal_positions = count_distinct(acquisition_times)

    return counts


def _append_suffix(record, suffix: str) -> None:
    record.study_instance_uid += suffix
    record.series_instance_uid += suffix
    record.protocol_name += suffix
    record.sequence_name += suffix


def build_image_records(
    files: List[FileRecord],
    start: int,
    end: int,
    counts: ImageCounts,
    template: ImageRecord,
) -> List[ImageRecord]:
    """
    Emit the image record(s) of one run and sort their files.

    If the run length differs from slices x temporal positions and is a whole
    multiple of it, the run is cut into fragments of that size. Fragment k
    gets k underscores appended to its identifiers, on the image and on its
    files, so that later key comparisons tell the fragments apart.
    """
    run_length = end - start
    template = deepcopy(template)
    template.file_start = start
    template.file_end = end
    template.slices = counts.slices or 0
    template.temporal_positions = counts.temporal_positions or 0
    template.number_of_frames = counts.number_of_frames or 0

    known = counts.slices is not None and counts.temporal_positions is not None
    expected = template.expected_num_files

    if not known or run_length == expected:
        sort_file_range(files, start, end)
        return [template]

    if run_length % expected != 0:
        logger.warning(
            f"Run of {run_length} files starting at file {start} does not match "
            f"{template.slices} slices x {template.temporal_positions} temporal positions; "
            f"keeping it as one image"
        )
        template.slices = 0
        template.temporal_positions = 0
        sort_file_range(files, start, end)
        return [template]

    num_fragments = run_length // expected
    logger.info(f"Splitting run of {run_length} files at file {start} into {num_fragments} images")

    images = []
    for k in range(num_fragments):
        fragment = deepcopy(template)
        fragment.file_start = start + k * expected
        fragment.file_end = fragment.file_start + expected
        if k > 0:
            suffix = SPLIT_SUFFIX * k
            _append_suffix(fragment, suffix)
            for f in files[fragment.file_start:fragment.file_end]:
                _append_suffix(f, suffix)
        sort_file_range(files, fragment.file_start, fragment.file_end)
        images.append(fragment)
    return images


def assemble_images(
    files: List[FileRecord],
    decoder_factory: DecoderFactory = open_decoder,
    progress: Optional[ProgressSink] = None,
) -> List[ImageRecord]:
    """
    Group sorted file records into image records, run by run.

    Args:
        files: File records, already ordered so that runs are contiguous.
            Sorted in place within each emitted image.
        decoder_factory: Opens a file for tag lookup
        progress: Optional progress sink

    Returns:
        Image records in file order
    """
    progress = progress or NullProgress()
    task = progress.emit_task(len(files), "Sorting DICOM images")

    images: List[ImageRecord] = []
    for start, end in iter_runs(files):
        first = files[start]
        template = ImageRecord(
            series_instance_uid=first.series_instance_uid,
            sequence_name=first.sequence_name,
            study_instance_uid=first.study_instance_uid,
            protocol_name=first.protocol_name,
        )

        counts = probe_image_counts(decoder_factory(first.filename, stop_before_pixels=True))
        counts = resolve_missing_counts(files, start, end, counts, decoder_factory)
        images.extend(build_image_records(files, start, end, counts, template))
        task.increment(end - start)

    task.set_finished()

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Assembled {len(images)} images from {len(files)} files")

    return images


def remove_duplicate_images(images: List[ImageRecord]) -> List[ImageRecord]:
    """Drop consecutive images that cover exactly the same file range."""
    result: List[ImageRecord] = []
    for image in images:
        if result and (result[-1].file_start, result[-1].file_end) == (image.file_start, image.file_end):
            continue
        result.append(image)
    return result
