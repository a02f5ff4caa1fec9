"""CMR DICOM Import - Reconstruct image volumes from directories of cardiac MR DICOM files."""

from .classification import FlowImageOrdering, ImageClass
from .cmr_importer import DicomDirImporterCMR
from .grid import DimensionClass
from .importer import DicomDirImporter
from .persistence import PersistenceError
from .records import FileRecord, GridBucket, ImageRecord
from .scan_cache import image_table, load_or_import

__version__ = "0.1.0"
__all__ = [
    "DicomDirImporter",
    "DicomDirImporterCMR",
    "ImageClass",
    "FlowImageOrdering",
    "DimensionClass",
    "FileRecord",
    "ImageRecord",
    "GridBucket",
    "PersistenceError",
    "load_or_import",
    "image_table",
]
