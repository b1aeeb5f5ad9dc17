import os
from pathlib import Path

# Base path for the API package
BASE_PATH = Path(__file__).resolve().parent

SERVICE_VERSION = os.environ.get("DRESSUP_VERSION", "0.1.0")

# Remote background-removal service. Both the URL and the token must be set,
# otherwise every request goes straight to the local fallback.
REMOVAL_SERVICE_URL = os.environ.get("DRESSUP_REMOVAL_URL", "")
REMOVAL_API_TOKEN = os.environ.get("DRESSUP_REMOVAL_TOKEN", "")
REMOVAL_TIMEOUT_SECONDS = float(os.environ.get("DRESSUP_REMOVAL_TIMEOUT", "30"))

# Upper bound for a whole preprocessing request, including the remote call.
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("DRESSUP_REQUEST_TIMEOUT", "120"))

# Local fallback: pixels brighter than this (0-255 mean of RGB) become transparent.
LOCAL_BRIGHTNESS_THRESHOLD = 240

# Classifier thresholds
ASPECT_TOP_MIN = 1.2
ASPECT_BOTTOM_MAX = 0.8
EDGE_GRADIENT_THRESHOLD = 30.0
SINGLE_GARMENT_CONFIDENCE = 0.6

# Region bands used by the advanced segmentation modes (fractions of height).
TOP_BAND_END = 0.6
BOTTOM_BAND_START = 0.4

# Backdrop templates: <name>.jpg (or .png) plus <name>-thumb.jpg previews.
BACKDROPS_DIR = Path(
    os.environ.get("DRESSUP_BACKDROPS_DIR", BASE_PATH.parent.parent / "assets" / "backdrops")
)
BACKDROP_NAMES = ["flat-fill", "studio", "fitting-room"]
FLAT_FILL_COLOR = os.environ.get("DRESSUP_FLAT_FILL", "#FFFFFF")
PREVIEW_SIZE = (200, 200)

# Reject decoded images above this many pixels.
MAX_IMAGE_PIXELS = int(os.environ.get("DRESSUP_MAX_PIXELS", str(40_000_000)))

# JPEG quality for the opaque payloads handed to the generation service.
GENERATION_JPEG_QUALITY = 95

LOG_LEVEL = os.environ.get("DRESSUP_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get(
    "DRESSUP_LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

_DEFAULT_CORS_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://127.0.0.1",
    "http://127.0.0.1:3000",
]

_cors_env = os.environ.get("DRESSUP_CORS_ORIGINS")
if _cors_env:
    CORS_ALLOW_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip()]
else:
    CORS_ALLOW_ORIGINS = _DEFAULT_CORS_ORIGINS

CORS_ALLOW_ORIGIN_REGEX = os.environ.get(
    "DRESSUP_CORS_ORIGIN_REGEX", r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
)
