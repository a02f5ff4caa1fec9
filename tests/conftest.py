from pathlib import Path

import numpy as np
import pytest
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.fileset import FileSet
from pydicom.uid import ExplicitVRLittleEndian, MRImageStorage

from cmr_dicom_import.decoder import DicomFileDecoder

STUDY_UID = "1.2.826.0.1.3680043.8.498.1"
SERIES_3DT = "1.2.826.0.1.3680043.8.498.1.1"
SERIES_3D = "1.2.826.0.1.3680043.8.498.1.2"
SERIES_2D = "1.2.826.0.1.3680043.8.498.1.3"


def default_pixels(slice_index, time_index, rows=4, columns=4):
    """Pixel value = 1000 * slice + 100 * time + y * columns + x."""
    base = slice_index * 1000 + time_index * 100
    return base + np.arange(rows * columns, dtype=np.uint16).reshape(rows, columns)


def make_mr_dataset(
    series_uid,
    instance_number,
    *,
    slice_index=0,
    time_index=0,
    rows=4,
    columns=4,
    slice_spacing=2.0,
    pixels=None,
    cardiac_images=None,
    study_uid=STUDY_UID,
    sequence_name="fl3d1",
    series_description="",
    patient_name="Doe^John",
    series_number=1,
):
    ds = Dataset()
    ds.file_meta = FileMetaDataset()
    ds.file_meta.MediaStorageSOPClassUID = MRImageStorage
    ds.file_meta.MediaStorageSOPInstanceUID = f"{series_uid}.{instance_number}"
    ds.file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds.SOPClassUID = MRImageStorage
    ds.SOPInstanceUID = f"{series_uid}.{instance_number}"
    ds.PatientName = patient_name
    ds.PatientID = "CMR0001"
    ds.PatientSex = "F"
    ds.PatientAge = "045Y"
    ds.PatientPosition = "HFS"
    ds.StudyInstanceUID = study_uid
    ds.StudyDate = "20240102"
    ds.StudyTime = "100000"
    ds.StudyID = "1"
    ds.StudyDescription = "Cardiac"
    ds.Modality = "MR"
    ds.Manufacturer = "ACME"
    ds.SeriesInstanceUID = series_uid
    ds.SeriesNumber = series_number
    ds.SeriesDescription = series_description
    ds.SequenceName = sequence_name
    ds.ProtocolName = "flow"
    ds.InstanceNumber = instance_number

    ds.Rows = rows
    ds.Columns = columns
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.BitsAllocated = 16
    ds.BitsStored = 12
    ds.HighBit = 11
    ds.PixelRepresentation = 0
    ds.PixelSpacing = [1.5, 1.5]
    ds.SpacingBetweenSlices = slice_spacing
    ds.ImageOrientationPatient = [1, 0, 0, 0, 1, 0]
    ds.ImagePositionPatient = [0.0, 0.0, slice_index * slice_spacing]
    ds.SliceLocation = slice_index * slice_spacing
    ds.AcquisitionTime = f"100000.{time_index * 50:03d}"
    if cardiac_images is not None:
        ds.CardiacNumberOfImages = cardiac_images

    if pixels is None:
        pixels = default_pixels(slice_index, time_index, rows, columns)
    ds.PixelData = np.asarray(pixels).astype("<u2").tobytes()
    return ds


def write_series(directory, series_uid, slices, times, *, prefix=None, pixel_fn=None, **kwargs):
    """Write one file per (slice, time) and return the paths, slice-major."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    prefix = prefix or f"s{series_uid.rsplit('.', 1)[-1]}_"

    paths = []
    for s in range(slices):
        for t in range(times):
            n = s * times + t
            pixels = pixel_fn(s, t) if pixel_fn is not None else None
            ds = make_mr_dataset(
                series_uid,
                n + 1,
                slice_index=s,
                time_index=t,
                pixels=pixels,
                cardiac_images=times if times > 1 else None,
                **kwargs,
            )
            path = directory / f"{prefix}{n + 1:04d}.dcm"
            ds.save_as(path, enforce_file_format=True)
            paths.append(path)
    return paths


class DatasetDecoders:
    """In-memory decoder factory: maps a filename to a pydicom Dataset."""

    def __init__(self, datasets=None):
        self.datasets = dict(datasets or {})

    def __call__(self, path, stop_before_pixels=False):
        ds = self.datasets.get(str(path))
        if ds is None:
            return None
        return DicomFileDecoder(ds, str(path))


@pytest.fixture
def study_dir(tmp_path):
    """A 3 slice x 2 phase 3D+T series, a 3 slice 3D series and a single 2D image."""
    directory = tmp_path / "study"
    write_series(directory, SERIES_3DT, 3, 2)
    write_series(directory, SERIES_3D, 3, 1, series_number=2, sequence_name="tfl3d1")
    write_series(directory, SERIES_2D, 1, 1, series_number=3, sequence_name="tfi2d1")
    (directory / "README.txt").write_text("not a DICOM file\n")
    return directory


@pytest.fixture
def dicomdir_study(tmp_path):
    """A DICOMDIR file-set with a 2-slice 3D series and a 2 x 2 3D+T series."""
    fs = FileSet()
    for s in range(2):
        fs.add(make_mr_dataset(SERIES_3D, s + 1, slice_index=s, series_number=2))
    for s in range(2):
        for t in range(2):
            n = s * 2 + t
            fs.add(make_mr_dataset(SERIES_3DT, n + 1, slice_index=s, time_index=t, cardiac_images=2))

    root = tmp_path / "media"
    root.mkdir()
    fs.write(root)
    return root


@pytest.fixture
def mr_dataset():
    return make_mr_dataset


@pytest.fixture
def series_writer():
    return write_series


@pytest.fixture
def decoders():
    return DatasetDecoders()
