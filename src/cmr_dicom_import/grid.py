"""Dimensionality classes and same-size grid buckets."""

from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .records import GridBucket, ImageRecord


class DimensionClass(str, Enum):
    """Dimensionality class of an image; the value is the short name used in tables."""

    IMAGE_2D = "2d"
    IMAGE_2DT = "2dt"
    IMAGE_3D = "3d"
    IMAGE_3DT = "3dt"


def classify_dimensions(image: ImageRecord) -> Optional[Tuple[DimensionClass, Tuple[int, ...]]]:
    """
    Return the dimensionality class of an image and its size vector.

    Images with fewer than two columns or rows belong to no class.
    """
    c, r, s, t = image.grid_size
    if c > 1 and r > 1 and s > 1 and t > 1:
        return DimensionClass.IMAGE_3DT, (c, r, s, t)
    if c > 1 and r > 1 and s > 1:
        return DimensionClass.IMAGE_3D, (c, r, s)
    if c > 1 and r > 1 and t > 1:
        return DimensionClass.IMAGE_2DT, (c, r, t)
    if c > 1 and r > 1:
        return DimensionClass.IMAGE_2D, (c, r)
    return None


def group_by_size(entries: Sequence[Tuple[int, Tuple[int, ...]]]) -> List[GridBucket]:
    """
    Group (image id, size) pairs into buckets of equal size.

    Buckets are ordered lexicographically by size; ids keep their input order
    inside a bucket.
    """
    buckets: List[GridBucket] = []
    for image_id, size in sorted(entries, key=lambda entry: entry[1]):
        if buckets and buckets[-1].size == size:
            buckets[-1].image_ids.append(image_id)
        else:
            buckets.append(GridBucket(size=size, image_ids=[image_id]))
    return buckets


def scan_image_dimensions(images: Sequence[ImageRecord]) -> Dict[DimensionClass, List[GridBucket]]:
    """
    Bucket all images by dimensionality class and exact grid size.

    Args:
        images: Aggregated image records, indexed by image id

    Returns:
        Dict with one (possibly empty) bucket list per DimensionClass
    """
    entries: Dict[DimensionClass, List[Tuple[int, Tuple[int, ...]]]] = {cls: [] for cls in DimensionClass}
    for image_id, image in enumerate(images):
        classified = classify_dimensions(image)
        if classified is None:
            continue
        cls, size = classified
        entries[cls].append((image_id, size))

    return {cls: group_by_size(items) for cls, items in entries.items()}
