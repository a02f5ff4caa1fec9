"""Semantic image roles, flow image axis ordering and velocity encoding."""

import logging
from enum import Enum, IntEnum
from typing import Dict, List, Sequence, Union

from .constants import DEFAULT_VENC_M_PER_S, MIN_VENC_M_PER_S

logger = logging.getLogger(__name__)


class ImageClass(IntEnum):
    """Semantic role of an image. Values are stored in scan files; do not renumber."""

    FlowImage_3DT = 0
    MagnitudeImage_3DT = 1
    AnatomicalImage_3DT = 2
    SignalIntensityImage_3DT = 3
    AnatomicalImage_3D = 4
    FlowImage_2DT = 5
    AnatomicalImage_2DT = 6
    AnatomicalImage_2D = 7

    @property
    def label(self) -> str:
        """Short name used in tables and CLI output."""
        return _CLASS_LABELS[self]


_CLASS_LABELS = {
    ImageClass.FlowImage_3DT: "flow_3dt",
    ImageClass.MagnitudeImage_3DT: "magnitude_3dt",
    ImageClass.AnatomicalImage_3DT: "anatomical_3dt",
    ImageClass.SignalIntensityImage_3DT: "signal_intensity_3dt",
    ImageClass.AnatomicalImage_3D: "anatomical_3d",
    ImageClass.FlowImage_2DT: "flow_2dt",
    ImageClass.AnatomicalImage_2DT: "anatomical_2dt",
    ImageClass.AnatomicalImage_2D: "anatomical_2d",
}


class FlowImageOrdering(str, Enum):
    """Which velocity axis each of the three flow images (in ascending id order) encodes."""

    XYZ = "xyz"
    XZY = "xzy"
    YXZ = "yxz"
    YZX = "yzx"
    ZXY = "zxy"
    ZYX = "zyx"

    @classmethod
    def parse(cls, value: Union["FlowImageOrdering", str]) -> "FlowImageOrdering":
        """
        Accept an ordering or its name in any case.

        Raises:
            ValueError: If the name is not one of the six orderings
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(o.value for o in cls)
            raise ValueError(f"Invalid flow image ordering '{value}'. Must be one of: {valid}") from None


# Swaps that turn an ascending id triplet into x, y, z order
_ORDERING_SWAPS = {
    FlowImageOrdering.XYZ: (),
    FlowImageOrdering.XZY: ((1, 2),),
    FlowImageOrdering.YXZ: ((0, 1),),
    FlowImageOrdering.YZX: ((0, 1), (1, 2)),
    FlowImageOrdering.ZXY: ((0, 2), (1, 2)),
    FlowImageOrdering.ZYX: ((0, 2),),
}


def apply_flow_ordering(ids: Sequence[int], ordering: FlowImageOrdering) -> List[int]:
    """
    Reorder three ascending image ids into x, y, z order.

    Lists that do not hold exactly three ids are returned unchanged.

    Examples:
        >>> apply_flow_ordering([4, 5, 6], FlowImageOrdering.ZXY)
        [6, 4, 5]
        >>> apply_flow_ordering([4, 5, 6], FlowImageOrdering.ZYX)
        [6, 5, 4]
    """
    ids = list(ids)
    if len(ids) != 3:
        return ids
    for a, b in _ORDERING_SWAPS[ordering]:
        ids[a], ids[b] = ids[b], ids[a]
    return ids


def clamp_venc(value: float) -> float:
    return max(float(value), MIN_VENC_M_PER_S)


class ImageClassification:
    """
    Insert-only map of image id to role, plus the flow ordering and venc values.

    Roles are only added through ``add``; nothing but ``clear`` removes them.
    """

    def __init__(self):
        self.classes: Dict[int, ImageClass] = {}
        self.ordering = FlowImageOrdering.XYZ
        self._venc_3dt = DEFAULT_VENC_M_PER_S
        self._venc_2dt = DEFAULT_VENC_M_PER_S

    def __len__(self) -> int:
        return len(self.classes)

    def clear(self) -> None:
        self.classes.clear()
        self.ordering = FlowImageOrdering.XYZ
        self._venc_3dt = DEFAULT_VENC_M_PER_S
        self._venc_2dt = DEFAULT_VENC_M_PER_S

    def add(self, image_id: int, image_class: ImageClass) -> bool:
        """Assign a role; returns False if the image already has one."""
        if image_id in self.classes:
            return False
        self.classes[image_id] = ImageClass(image_class)
        return True

    def is_class(self, image_id: int, image_class: ImageClass) -> bool:
        return self.classes.get(image_id) == image_class

    def class_of(self, image_id: int):
        return self.classes.get(image_id)

    def ids_of(self, image_class: ImageClass) -> List[int]:
        return sorted(image_id for image_id, cls in self.classes.items() if cls == image_class)

    @property
    def venc_3dt(self) -> float:
        return self._venc_3dt

    @venc_3dt.setter
    def venc_3dt(self, value: float) -> None:
        self._venc_3dt = clamp_venc(value)

    @property
    def venc_2dt(self) -> float:
        return self._venc_2dt

    @venc_2dt.setter
    def venc_2dt(self, value: float) -> None:
        self._venc_2dt = clamp_venc(value)
