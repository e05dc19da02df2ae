# =============================================================================
# constants.py
# Shared constants: storage keys, history limits, settings defaults and
# ranges, OCR languages, and YOLO model options.
# =============================================================================

from pathlib import Path

# -- Storage ------------------------------------------------------------------
SETTINGS_STORAGE_KEY = "ursa-settings"
HISTORY_STORAGE_KEY  = "ursa-history"

# Default on-disk location for FileStorage (one JSON file per key).
DEFAULT_STORAGE_DIR = Path.home() / ".media_analyzer"

# Typical quota of a key-value backend. Reported as an estimate, never measured.
STORAGE_QUOTA_BYTES = 5 * 1024 * 1024

# -- History ------------------------------------------------------------------
HISTORY_MAX_ENTRIES          = 10
HISTORY_THUMBNAIL_MAX_WIDTH  = 400
HISTORY_THUMBNAIL_QUALITY    = 70      # JPEG quality, 1-95
HISTORY_COMPRESSION_TIMEOUT  = 10.0    # seconds

# -- Settings -----------------------------------------------------------------
SETTINGS_VERSION      = 1
SETTINGS_DEBOUNCE_MS  = 500

DEFAULT_CONFIDENCE_THRESHOLD = 50
DEFAULT_MAX_DETECTIONS       = 20
DEFAULT_SHOW_LABELS          = True
DEFAULT_SHOW_SCORES          = True
DEFAULT_OCR_LANGUAGE         = "eng"
DEFAULT_OCR_MIN_CONFIDENCE   = 50
DEFAULT_VIDEO_FPS            = 5

# Closed ranges: setting name -> (min, max)
SETTINGS_CONSTRAINTS = {
    "confidenceThreshold": (0, 100),
    "maxDetections":       (1, 50),
    "minConfidence":       (0, 100),
    "videoFPS":            (1, 15),
}

# FPS slider tiers: <= low battery saver, <= medium balanced, <= high smooth,
# anything above is high performance.
FPS_QUALITY_THRESHOLDS = {
    "low":    3,
    "medium": 7,
    "high":   10,
}

# -- OCR ----------------------------------------------------------------------
# Tesseract language codes
SUPPORTED_LANGUAGES = (
    "eng",       # English
    "spa",       # Spanish
    "fra",       # French
    "deu",       # German
    "chi_sim",   # Simplified Chinese
    "jpn",       # Japanese
)

OCR_LINE_THRESHOLD_PX = 20

# -- Classification -----------------------------------------------------------
CLASSIFICATION_TOP_K          = 5
CLASSIFICATION_MIN_CONFIDENCE = 0.01

# -- Video loop ---------------------------------------------------------------
FRAME_CLOCK_HZ = 60

# -- YOLO model options: size -> weights file ---------------------------------
# nano is fastest and least accurate, medium is most accurate and slowest.
MODEL_SIZES        = ("nano", "small", "medium")
DEFAULT_MODEL_SIZE = "nano"

DETECTION_MODEL_OPTIONS = {
    "nano":   "yolov8n.pt",
    "small":  "yolov8s.pt",
    "medium": "yolov8m.pt",
}

CLASSIFICATION_MODEL_OPTIONS = {
    "nano":   "yolov8n-cls.pt",
    "small":  "yolov8s-cls.pt",
    "medium": "yolov8m-cls.pt",
}
