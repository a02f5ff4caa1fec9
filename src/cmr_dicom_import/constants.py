"""Default configuration values and constants for cmr-dicom-import."""

# DICOM directory index
DICOMDIR_FILENAME = "dicomdir"
DICOMDIR_MEDIA_STORAGE_SOP_CLASS_UID = "1.2.840.10008.1.3.10"

# Private tags
PHILIPS_NUMBER_OF_SLICES_TAG = (0x2001, 0x1018)
PHILIPS_NUMBER_OF_PHASES_TAG = (0x2001, 0x1017)
PRIVATE_SEQUENCE_NAME_TAG = (0x0051, 0x1014)

# Flow image detection
DEFAULT_CORNER_PORTION = 8
DEFAULT_CORNER_WORKERS = 8
MIN_CORNER_SIZE = 2
SCORE_THRESHOLD_FACTOR = 100
MIN_FLOW_IMAGES = 3

# Temporal resolution
MAX_PLAUSIBLE_HEARTBEAT_MS = 2000.0

# Velocity encoding
DEFAULT_VENC_M_PER_S = 1.0
MIN_VENC_M_PER_S = 0.01

# Performance defaults
DEFAULT_MAX_WORKERS = 8

# Scan cache
CACHE_APP_NAME = "cmr-dicom-import"
CACHE_ENV_VAR = "CMR_DICOM_IMPORT_CACHE_DIR"
CACHE_SUBDIR = "scans"
CACHE_SUFFIX = "_scan.bin"
