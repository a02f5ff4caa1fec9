"""Per-file DICOM decoding backed by pydicom.

Every parse or pixel decode goes through ``DECODER_LOCK``. File bytes are read
outside the lock so that callers on a thread pool still overlap their I/O.
"""

import logging
import threading
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import pydicom
from pydicom.multival import MultiValue
from pydicom.tag import Tag

logger = logging.getLogger(__name__)

DECODER_LOCK = threading.RLock()

TagLike = Union[str, int, Tuple[int, int]]


class DicomFileDecoder:
    """Tag lookup and pixel access for one parsed DICOM file."""

    def __init__(self, dataset: pydicom.Dataset, filename: str = ""):
        self.dataset = dataset
        self.filename = filename

    def __repr__(self) -> str:
        return f"DicomFileDecoder(filename={self.filename!r}, elements={len(self.dataset)})"

    def has_tag(self, tag: TagLike) -> bool:
        try:
            return Tag(tag) in self.dataset
        except ValueError:
            return False

    def string_value(self, tag: TagLike) -> str:
        """
        Return the value of a tag as a trimmed string.

        Multi-valued elements are joined with a backslash, the same way they
        are stored on disk. Missing tags give an empty string.
        """
        if not self.has_tag(tag):
            return ""

        try:
            value = self.dataset[Tag(tag)].value
        except Exception as e:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Could not read tag {tag} from {self.filename}: {e}")
            return ""

        return value_to_string(value)

    def image_dimensions(self) -> Tuple[int, int]:
        """Return (columns, rows) of the stored image, 0 where unknown."""
        return _to_int(self.string_value("Columns")), _to_int(self.string_value("Rows"))

    def raw_pixel_buffer(self) -> bytes:
        """
        Return the pixel buffer of this file.

        Uncompressed transfer syntaxes return the stored bytes unchanged;
        compressed ones are decoded through pydicom's pixel handlers.
        """
        if "PixelData" not in self.dataset:
            return b""

        file_meta = getattr(self.dataset, "file_meta", None)
        transfer_syntax = getattr(file_meta, "TransferSyntaxUID", None) if file_meta is not None else None

        with DECODER_LOCK:
            if transfer_syntax is not None and transfer_syntax.is_compressed:
                return self.dataset.pixel_array.tobytes()
            return bytes(self.dataset.PixelData)


DecoderFactory = Callable[..., Optional[DicomFileDecoder]]


def open_decoder(path: Union[str, Path], stop_before_pixels: bool = False) -> Optional[DicomFileDecoder]:
    """
    Open a DICOM file for tag lookup and pixel access.

    Args:
        path: Path to the DICOM file
        stop_before_pixels: If True, pixel data is not loaded

    Returns:
        DicomFileDecoder, or None if the file could not be read or parsed
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        logger.warning(f"Could not read file {path}: {e}")
        return None

    with DECODER_LOCK:
        try:
            ds = pydicom.dcmread(BytesIO(data), stop_before_pixels=stop_before_pixels, force=True)
        except Exception as e:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Could not parse {path} as DICOM: {e}")
            return None

    if len(ds) == 0:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"No DICOM elements found in {path}")
        return None

    return DicomFileDecoder(ds, str(path))


def value_to_string(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return _bytes_to_string(bytes(value))
    if isinstance(value, (MultiValue, list, tuple)):
        return "\\".join(value_to_string(v) for v in value)
    return str(value).strip()


def _bytes_to_string(data: bytes) -> str:
    # Private elements read as UN: text values are padded ASCII, numeric ones
    # are little endian binary.
    stripped = data.rstrip(b"\x00 ")
    if stripped and all(32 <= b < 127 for b in stripped):
        return stripped.decode("ascii").strip()
    if len(data) in (2, 4, 8):
        return str(int.from_bytes(data, "little", signed=True))
    return data.decode("latin-1").strip("\x00 ")


def _to_int(text: str) -> int:
    try:
        return int(float(text))
    except (TypeError, ValueError):
        return 0
