# =============================================================================
# media.py
# Media handles (still images and live camera streams), data-URL codec,
# history thumbnail compression, and bounding-box helpers.
# =============================================================================

import base64
import binascii
import io
import re
import threading
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from loguru import logger
from PIL import Image

from models import (AnalysisMode, AnalysisResult, BoundingBox, HistoryEntryInput,
                    ImageDimensions)


# =============================================================================
# DATA URLS
# =============================================================================

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?P<b64>;base64)?,(?P<data>.*)$", re.S)


def encode_data_url(pil_img: Image.Image, fmt: str = "JPEG", quality: int = 90) -> str:
    """Encode a PIL image as a base64 data URL."""
    img = pil_img.convert("RGB") if fmt.upper() == "JPEG" else pil_img
    buf = io.BytesIO()
    img.save(buf, format=fmt, quality=quality)
    mime = "image/jpeg" if fmt.upper() == "JPEG" else f"image/{fmt.lower()}"
    return f"data:{mime};base64,{base64.b64encode(buf.getvalue()).decode('ascii')}"


def decode_data_url(data_url: str) -> Image.Image:
    """
    Decode a base64 data URL into a loaded PIL image.
    Raises ValueError if the string is not a base64 image data URL.
    """
    match = _DATA_URL.match(data_url or "")
    if not match or not match.group("b64"):
        raise ValueError("Not a base64 data URL")
    try:
        raw = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except Exception as e:
        raise ValueError(f"Cannot decode image: {e}") from e
    return img


def compress_image_data_url(data_url: str, max_width: int,
                            quality: int) -> Tuple[str, float, ImageDimensions]:
    """
    Downscale a data-URL image to at most `max_width` wide and re-encode it
    as JPEG at `quality`. Returns (data_url, scale, compressed dimensions).
    Raises ValueError for undecodable or zero-size images.
    """
    img = decode_data_url(data_url)
    w, h = img.size
    if w == 0 or h == 0:
        raise ValueError("Image has zero width or height")

    scale = min(1.0, max_width / w)
    new_w = round(w * scale)
    new_h = round(h * scale)
    if (new_w, new_h) != (w, h):
        img = img.resize((new_w, new_h), Image.LANCZOS)

    compressed = encode_data_url(img, fmt="JPEG", quality=quality)
    return compressed, scale, ImageDimensions(width=new_w, height=new_h)


# =============================================================================
# BOUNDING BOX HELPERS
# =============================================================================

def scale_bbox(bbox: BoundingBox, scale: float) -> BoundingBox:
    """Scale every component and round to whole pixels."""
    return BoundingBox(
        x=round(bbox.x * scale),
        y=round(bbox.y * scale),
        width=round(bbox.width * scale),
        height=round(bbox.height * scale),
    )


def clamp_bbox(bbox: BoundingBox, width: float, height: float) -> BoundingBox:
    """Clip a box to the image rectangle. Boxes fully outside collapse to zero size."""
    x  = max(0, min(bbox.x, width))
    y  = max(0, min(bbox.y, height))
    x2 = max(x, min(bbox.x + bbox.width, width))
    y2 = max(y, min(bbox.y + bbox.height, height))
    return BoundingBox(x=x, y=y, width=x2 - x, height=y2 - y)


# =============================================================================
# STILL IMAGE
# =============================================================================

class StillImage:
    """An uploaded image. frame() always returns the same BGR array."""

    def __init__(self, pil_img: Image.Image, name: str = ""):
        self.image = pil_img.convert("RGB")
        self.name  = name
        self._bgr  = cv2.cvtColor(np.array(self.image), cv2.COLOR_RGB2BGR)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "StillImage":
        path = Path(path).expanduser()
        with Image.open(path) as im:
            im.load()
            return cls(im, name=path.name)

    @classmethod
    def from_data_url(cls, data_url: str, name: str = "") -> "StillImage":
        return cls(decode_data_url(data_url), name=name)

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def dimensions(self) -> ImageDimensions:
        return ImageDimensions(width=self.width, height=self.height)

    def frame(self) -> np.ndarray:
        return self._bgr

    def to_data_url(self, quality: int = 90) -> str:
        return encode_data_url(self.image, fmt="JPEG", quality=quality)


# =============================================================================
# CAMERA STREAM
# =============================================================================

class CameraStream:
    """
    Live camera via OpenCV. start()/stop() are idempotent and thread-safe;
    use as a context manager to guarantee the device is released.
    """

    def __init__(self, device: int = 0, width: Optional[int] = None,
                 height: Optional[int] = None):
        self.device     = device
        self._req_w     = width
        self._req_h     = height
        self._lock      = threading.Lock()
        self._cap       = None
        self._last      = None

    def __enter__(self) -> "CameraStream":
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    @property
    def is_running(self) -> bool:
        return self._cap is not None

    def start(self):
        with self._lock:
            if self._cap is not None:
                return
            cap = cv2.VideoCapture(self.device)
            if not cap.isOpened():
                cap.release()
                raise RuntimeError(f"Cannot open camera {self.device}")
            if self._req_w:
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._req_w)
            if self._req_h:
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._req_h)
            self._cap = cap
            logger.info(f"Camera {self.device} started")

    def stop(self):
        with self._lock:
            if self._cap is None:
                return
            try:
                self._cap.release()
            finally:
                self._cap = None
                logger.info(f"Camera {self.device} stopped")

    def frame(self) -> np.ndarray:
        """Grab the current BGR frame. Raises RuntimeError if none is available."""
        with self._lock:
            if self._cap is None:
                raise RuntimeError("Camera is not running")
            ok, frame = self._cap.read()
        if not ok or frame is None:
            raise RuntimeError(f"Failed to read frame from camera {self.device}")
        self._last = frame
        return frame

    @property
    def width(self) -> int:
        if self._last is not None:
            return int(self._last.shape[1])
        return int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)) if self._cap else 0

    @property
    def height(self) -> int:
        if self._last is not None:
            return int(self._last.shape[0])
        return int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)) if self._cap else 0

    @property
    def dimensions(self) -> ImageDimensions:
        return ImageDimensions(width=self.width, height=self.height)

    def to_data_url(self, quality: int = 90) -> str:
        """Snapshot of the most recent frame."""
        if self._last is None:
            raise RuntimeError("No frame captured yet")
        rgb = cv2.cvtColor(self._last, cv2.COLOR_BGR2RGB)
        return encode_data_url(Image.fromarray(rgb), fmt="JPEG", quality=quality)


# =============================================================================
# HISTORY INPUT
# =============================================================================

def history_input_from_media(media, mode: AnalysisMode,
                             result: AnalysisResult) -> HistoryEntryInput:
    """Snapshot the media as a data URL and pair it with the result for history."""
    return HistoryEntryInput(
        analysis_type=AnalysisMode(mode),
        image_data_url=media.to_data_url(),
        results=result,
        image_dimensions=media.dimensions,
    )
