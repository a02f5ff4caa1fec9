"""Importer for cardiac MR studies with 4D flow acquisitions."""

import logging
from typing import List, Union

from .classification import FlowImageOrdering, ImageClass, ImageClassification, apply_flow_ordering
from .constants import DEFAULT_CORNER_PORTION, DEFAULT_CORNER_WORKERS, MAX_PLAUSIBLE_HEARTBEAT_MS
from .flow_detection import determine_flow_triplets
from .grid import DimensionClass
from .importer import DicomDirImporter
from .persistence import PersistenceError, ScanReader, ScanWriter

logger = logging.getLogger(__name__)

_ORDERINGS = list(FlowImageOrdering)


class DicomDirImporterCMR(DicomDirImporter):
    """
    DicomDirImporter that also assigns semantic roles to images.

    Roles are stored in an insert-only map filled by ``determine_flow_images``
    or the ``add_*`` methods. Flow and magnitude images are returned in
    x, y, z order according to ``flow_image_ordering``.
    """

    def __init__(self, directory=None, **kwargs):
        self._classification = ImageClassification()
        super().__init__(directory, **kwargs)

    def _clear_extension(self) -> None:
        self._classification.clear()

    def clear_classification(self) -> None:
        """Forget all roles and reset the flow ordering and venc values."""
        self._classification.clear()

    @property
    def classification(self) -> ImageClassification:
        return self._classification

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def add_to_class(self, image_id: int, image_class: ImageClass) -> bool:
        """
        Assign a role to an image.

        Returns:
            False if the image already has a role; roles are never replaced
        """
        self.image_infos(image_id)
        added = self._classification.add(image_id, image_class)
        if not added and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"Image {image_id} is already classified as "
                f"{self._classification.class_of(image_id).name}"
            )
        return added

    def is_class(self, image_id: int, image_class: ImageClass) -> bool:
        return self._classification.is_class(image_id, image_class)

    def class_of(self, image_id: int):
        """Role of an image, or None if it has none."""
        return self._classification.class_of(image_id)

    def ids_of_image_class(self, image_class: ImageClass) -> List[int]:
        return self._classification.ids_of(image_class)

    def add_3dt_flow_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.FlowImage_3DT)

    def add_3dt_magnitude_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.MagnitudeImage_3DT)

    def add_3dt_anatomical_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.AnatomicalImage_3DT)

    def add_3dt_signal_intensity_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.SignalIntensityImage_3DT)

    def add_3d_anatomical_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.AnatomicalImage_3D)

    def add_2dt_flow_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.FlowImage_2DT)

    def add_2dt_anatomical_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.AnatomicalImage_2DT)

    def add_2d_anatomical_image(self, image_id: int) -> bool:
        return self.add_to_class(image_id, ImageClass.AnatomicalImage_2D)

    def is_3dt_flow_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.FlowImage_3DT)

    def is_3dt_magnitude_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.MagnitudeImage_3DT)

    def is_3dt_anatomical_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.AnatomicalImage_3DT)

    def is_3dt_signal_intensity_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.SignalIntensityImage_3DT)

    def is_3d_anatomical_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.AnatomicalImage_3D)

    def is_2dt_flow_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.FlowImage_2DT)

    def is_2dt_anatomical_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.AnatomicalImage_2DT)

    def is_2d_anatomical_image(self, image_id: int) -> bool:
        return self.is_class(image_id, ImageClass.AnatomicalImage_2D)

    def class_3dt_flow_images(self, sort_xyz: bool = True) -> List[int]:
        ids = self.ids_of_image_class(ImageClass.FlowImage_3DT)
        return apply_flow_ordering(ids, self.flow_image_ordering) if sort_xyz else ids

    def class_3dt_magnitude_images(self, sort_xyz: bool = True) -> List[int]:
        ids = self.ids_of_image_class(ImageClass.MagnitudeImage_3DT)
        return apply_flow_ordering(ids, self.flow_image_ordering) if sort_xyz else ids

    def class_3dt_anatomical_images(self) -> List[int]:
        return self.ids_of_image_class(ImageClass.AnatomicalImage_3DT)

    def class_3dt_signal_intensity_images(self) -> List[int]:
        return self.ids_of_image_class(ImageClass.SignalIntensityImage_3DT)

    def class_3d_anatomical_images(self) -> List[int]:
        return self.ids_of_image_class(ImageClass.AnatomicalImage_3D)

    def class_2dt_flow_images(self) -> List[int]:
        return self.ids_of_image_class(ImageClass.FlowImage_2DT)

    def class_2dt_anatomical_images(self) -> List[int]:
        return self.ids_of_image_class(ImageClass.AnatomicalImage_2DT)

    def class_2d_anatomical_images(self) -> List[int]:
        return self.ids_of_image_class(ImageClass.AnatomicalImage_2D)

    # ------------------------------------------------------------------
    # Flow ordering and velocity encoding
    # ------------------------------------------------------------------

    @property
    def flow_image_ordering(self) -> FlowImageOrdering:
        return self._classification.ordering

    def set_flow_image_ordering(self, ordering: Union[FlowImageOrdering, str]) -> None:
        """
        Set which velocity axis each flow image encodes.

        Raises:
            ValueError: If ``ordering`` names no valid ordering
        """
        self._classification.ordering = FlowImageOrdering.parse(ordering)

    @property
    def venc_3dt_in_m_per_s(self) -> float:
        return self._classification.venc_3dt

    def set_venc_3dt_in_m_per_s(self, venc: float) -> None:
        self._classification.venc_3dt = venc

    @property
    def venc_2dt_in_m_per_s(self) -> float:
        return self._classification.venc_2dt

    def set_venc_2dt_in_m_per_s(self, venc: float) -> None:
        self._classification.venc_2dt = venc

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def determine_flow_images(
        self,
        corner_portion: int = DEFAULT_CORNER_PORTION,
        max_workers: int = DEFAULT_CORNER_WORKERS,
    ) -> List[List[int]]:
        """
        Detect the three flow images of every 3D+T bucket and tag them.

        Args:
            corner_portion: Corner edge length as a fraction of the image size
            max_workers: Threads evaluating the corners of one image

        Returns:
            Ascending id triplets that were detected, one per bucket

        Raises:
            ValueError: If corner_portion is not positive
        """
        found = determine_flow_triplets(
            self.buckets(DimensionClass.IMAGE_3DT),
            self._images,
            self._read_block,
            corner_portion=corner_portion,
            max_workers=max_workers,
            progress=self._progress,
        )

        triplets = []
        for _bucket, triplet in found:
            for image_id in triplet:
                self.add_3dt_flow_image(image_id)
            triplets.append(triplet)
        return triplets

    def guess_2dt_from_4dt_temporal_resolution(self) -> float:
        """
        Give 2D+T images without temporal resolution one derived from the 3D+T images.

        The heartbeat length (temporal resolution x time steps) is averaged
        over all 3D+T images that have a temporal resolution, ignoring
        implausible beats. Each 2D+T image with more than one time step and
        no temporal resolution gets that average divided by its time steps.

        Returns:
            The average heartbeat in ms, or 0 if no 3D+T image could be used
        """
        beats = []
        for bucket in self.buckets(DimensionClass.IMAGE_3DT):
            for image_id in bucket.image_ids:
                info = self._images[image_id]
                if info.temporal_resolution == 0:
                    continue
                beat = info.temporal_resolution * info.temporal_positions
                if beat > MAX_PLAUSIBLE_HEARTBEAT_MS:
                    logger.warning(f"Ignoring implausible heartbeat of {beat:.1f} ms in image {image_id}")
                    continue
                beats.append(beat)

        if not beats:
            return 0.0

        average = sum(beats) / len(beats)
        for bucket in self.buckets(DimensionClass.IMAGE_2DT):
            for image_id in bucket.image_ids:
                info = self._images[image_id]
                if info.temporal_resolution == 0 and info.temporal_positions > 1:
                    info.temporal_resolution = average / info.temporal_positions
                    logger.info(
                        f"Image {image_id}: temporal resolution guessed as "
                        f"{info.temporal_resolution:.2f} ms from a {average:.1f} ms heartbeat"
                    )
        return average

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save_extension(self, writer: ScanWriter) -> None:
        classes = self._classification.classes
        writer.write_u32(len(classes))
        for image_id in sorted(classes):
            writer.write_u32(image_id)
            writer.write_u32(int(classes[image_id]))
        writer.write_u32(_ORDERINGS.index(self._classification.ordering))
        writer.write_f64(self._classification.venc_3dt)
        writer.write_f64(self._classification.venc_2dt)

    def _load_extension(self, reader: ScanReader) -> None:
        self._classification.clear()
        if reader.at_end():
            # Scan written by the plain importer
            return

        for _ in range(reader.read_u32()):
            image_id = reader.read_u32()
            tag = reader.read_u32()
            try:
                self._classification.add(image_id, ImageClass(tag))
            except ValueError as e:
                raise PersistenceError(f"unknown image class tag {tag}") from e

        ordering_index = reader.read_u32()
        if ordering_index >= len(_ORDERINGS):
            raise PersistenceError(f"unknown flow image ordering {ordering_index}")
        self._classification.ordering = _ORDERINGS[ordering_index]
        self._classification.venc_3dt = reader.read_f64()
        self._classification.venc_2dt = reader.read_f64()
