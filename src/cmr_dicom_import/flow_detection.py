"""
Flow image detection for time-resolved 3D phase-contrast scans.

The corners of a volume are usually air. In phase (flow) images air is pure
phase noise, so the temporal standard deviation there is orders of magnitude
higher than in magnitude or anatomical images of the same acquisition. Each
image of a same-size 3D+T bucket is scored by the mean temporal standard
deviation over its 8 corner blocks, and a ladder of rules picks the three
flow images from the scores.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .block_reader import BlockRange
from .constants import (
    DEFAULT_CORNER_PORTION,
    DEFAULT_CORNER_WORKERS,
    MIN_CORNER_SIZE,
    MIN_FLOW_IMAGES,
    SCORE_THRESHOLD_FACTOR,
)
from .progress import NullProgress, ProgressSink
from .records import GridBucket, ImageRecord

logger = logging.getLogger(__name__)

BlockReader = Callable[[int, BlockRange], np.ndarray]


@dataclass(frozen=True)
class FlowCandidate:
    image_id: int
    score: float


def corner_ranges(grid_size: Sequence[int], corner_portion: int = DEFAULT_CORNER_PORTION) -> List[BlockRange]:
    """
    Return the 8 corner blocks of a (C, R, S, T) grid.

    Each corner spans ``max(size // corner_portion, 2)`` samples on x, y and z
    (clipped to the grid) and the full time range.

    Raises:
        ValueError: If corner_portion is not positive
    """
    if corner_portion <= 0:
        raise ValueError(f"corner_portion must be positive, got {corner_portion}")

    columns, rows, slices, times = (int(v) for v in grid_size[:4])
    extents = []
    for size in (columns, rows, slices):
        corner = min(max(size // corner_portion, MIN_CORNER_SIZE), size)
        extents.append(((0, corner - 1), (size - corner, size - 1)))

    ranges = []
    for x in extents[0]:
        for y in extents[1]:
            for z in extents[2]:
                ranges.append(BlockRange(x[0], x[1], y[0], y[1], z[0], z[1], 0, times - 1))
    return ranges


def corner_temporal_std(block: np.ndarray) -> float:
    """Mean over all voxels of the population standard deviation along the last (time) axis."""
    if block.size == 0:
        return 0.0
    return float(np.std(block, axis=-1).mean())


def image_corner_score(
    read_block: BlockReader,
    image_id: int,
    grid_size: Sequence[int],
    corner_portion: int = DEFAULT_CORNER_PORTION,
    max_workers: int = DEFAULT_CORNER_WORKERS,
) -> float:
    """
    Score one image by the mean temporal standard deviation of its 8 corners.

    Args:
        read_block: Reads a block of an image as an (x, y, z, t) array
        image_id: Image to score
        grid_size: (C, R, S, T) size of the image
        corner_portion: Corner edge length as a fraction of the image size
        max_workers: Threads evaluating the corners

    Returns:
        Mean of the 8 corner values
    """
    ranges = corner_ranges(grid_size, corner_portion)
    corner_values: Dict[int, float] = {}
    lock = threading.Lock()

    def evaluate(corner_index: int, block_range: BlockRange) -> None:
        value = corner_temporal_std(read_block(image_id, block_range))
        with lock:
            corner_values[corner_index] = value

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {executor.submit(evaluate, i, r): i for i, r in enumerate(ranges)}
        for future in as_completed(futures):
            # Propagate read errors from the corner task
            future.result()

    score = sum(corner_values[i] for i in range(len(ranges))) / len(ranges)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Image {image_id} corner score {score:.4f}")
    return score


def rank_candidates(scores: Dict[int, float]) -> List[FlowCandidate]:
    """
    Order candidates by ascending score, ties by ascending id, and drop
    candidates whose score equals the previous one (likely duplicates).
    """
    ordered = sorted((FlowCandidate(image_id, score) for image_id, score in scores.items()), key=lambda c: c.image_id)
    ordered.sort(key=lambda c: c.score)

    result: List[FlowCandidate] = []
    for candidate in ordered:
        if result and result[-1].score == candidate.score:
            continue
        result.append(candidate)
    return result


def _find_progression(ids: List[int], step: int) -> Optional[List[int]]:
    for k in range(len(ids) - 2):
        if ids[k + 1] == ids[k] + step and ids[k + 2] == ids[k] + 2 * step:
            return ids[k:k + 3]
    return None


def select_flow_triplet(candidates: List[FlowCandidate], images: Sequence[ImageRecord]) -> Optional[List[int]]:
    """
    Pick the three flow images of one bucket from ranked candidates.

    Rules, first that applies:

    1. Exactly three candidates: all of them.
    2. Exactly three scores of at least 100x the minimum score.
    3. Candidates scoring below the image's largest pixel value are dropped;
       fewer than three left means the bucket has no flow images.
    4. Among those left, a single sequence name shared by exactly three
       images: those three. Otherwise exactly three distinct sequence names:
       the lowest id of each name.
    5. Three consecutive ids, then three ids at stride two, then the first
       three ids. The last case is a guess and is logged as such.

    Returns:
        Ascending list of three image ids, or None
    """
    if len(candidates) < MIN_FLOW_IMAGES:
        return None
    if len(candidates) == MIN_FLOW_IMAGES:
        return sorted(c.image_id for c in candidates)

    threshold = SCORE_THRESHOLD_FACTOR * min(c.score for c in candidates)
    above = [c.image_id for c in candidates if c.score >= threshold]
    if len(above) == MIN_FLOW_IMAGES:
        return sorted(above)

    noisy = [c.image_id for c in candidates if c.score >= images[c.image_id].largest_image_pixel_value]
    if len(noisy) < MIN_FLOW_IMAGES:
        return None

    by_sequence: "OrderedDict[str, List[int]]" = OrderedDict()
    for image_id in noisy:
        name = images[image_id].any_sequence_name
        if name:
            by_sequence.setdefault(name, []).append(image_id)
    triples = [ids for ids in by_sequence.values() if len(ids) == MIN_FLOW_IMAGES]
    if len(triples) == 1:
        return sorted(triples[0])
    if len(by_sequence) == MIN_FLOW_IMAGES:
        return sorted(min(ids) for ids in by_sequence.values())

    noisy.sort()
    triplet = _find_progression(noisy, 1) or _find_progression(noisy, 2)
    if triplet is not None:
        return triplet

    logger.warning(
        f"Could not identify flow images among {noisy} with confidence; guessing {noisy[:3]}"
    )
    return noisy[:3]


def determine_flow_triplets(
    buckets: Sequence[GridBucket],
    images: Sequence[ImageRecord],
    read_block: BlockReader,
    corner_portion: int = DEFAULT_CORNER_PORTION,
    max_workers: int = DEFAULT_CORNER_WORKERS,
    progress: Optional[ProgressSink] = None,
) -> List[Tuple[GridBucket, List[int]]]:
    """
    Find the flow image triplet of every 3D+T bucket with at least three images.

    Args:
        buckets: Same-size 3D+T buckets
        images: All image records, indexed by id
        read_block: Reads a block of an image as an (x, y, z, t) array
        corner_portion: Corner edge length as a fraction of the image size
        max_workers: Threads evaluating the corners of one image
        progress: Optional progress sink

    Returns:
        (bucket, ascending triplet) for each bucket where flow images were found
    """
    if corner_portion <= 0:
        raise ValueError(f"corner_portion must be positive, got {corner_portion}")

    progress = progress or NullProgress()
    total = sum(len(b) + 1 for b in buckets)
    task = progress.emit_task(total, "Searching flow images")

    results = []
    for bucket in buckets:
        if len(bucket) < MIN_FLOW_IMAGES:
            task.increment(len(bucket) + 1)
            continue

        scores = {}
        for image_id in bucket.image_ids:
            scores[image_id] = image_corner_score(read_block, image_id, bucket.size, corner_portion, max_workers)
            task.increment(1)

        triplet = select_flow_triplet(rank_candidates(scores), images)
        task.increment(1)
        if triplet is None:
            logger.info(f"No flow images found in 3D+T bucket of size {bucket.size}")
            continue

        logger.info(f"Flow images in 3D+T bucket of size {bucket.size}: {triplet}")
        results.append((bucket, triplet))

    task.set_finished()
    return results
