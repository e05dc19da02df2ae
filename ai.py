# =============================================================================
# ai.py
# Inference engines behind one narrow interface: YOLO object detection,
# YOLO image classification, and Tesseract OCR. Plus the OCR text helpers
# (reading-order sort and full-text assembly).
#
# Engine interface:
#   await engine.initialize()   idempotent; concurrent callers share one load
#   await engine.infer(frame)   BGR numpy frame -> result dataclass
#   engine.dispose()            release the model; safe to call repeatedly
# =============================================================================

import asyncio
import time
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import List, Optional

import cv2
import numpy as np
import pytesseract
from loguru import logger
from PIL import Image

from constants import (CLASSIFICATION_MIN_CONFIDENCE, CLASSIFICATION_MODEL_OPTIONS,
                       CLASSIFICATION_TOP_K, DEFAULT_MODEL_SIZE, DEFAULT_OCR_LANGUAGE,
                       DETECTION_MODEL_OPTIONS, OCR_LINE_THRESHOLD_PX)
from errors import (AnalysisError, InferenceError, InvalidImageError, LanguagePackError,
                    ModelLoadError, WorkerError)
from models import (AnalysisMode, AppSettings, BoundingBox, ClassificationAnalysis,
                    ClassificationPrediction, DetectedObject, DetectionResult,
                    ImageDimensions, OCRAnalysis, TextRegion)
from settings import validate_language


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _frame_dims(frame: np.ndarray) -> ImageDimensions:
    h, w = frame.shape[:2]
    return ImageDimensions(width=int(w), height=int(h))


def to_bgr(image) -> np.ndarray:
    """Accept a BGR array or a PIL image; return a BGR array."""
    if isinstance(image, Image.Image):
        return cv2.cvtColor(np.array(image.convert("RGB")), cv2.COLOR_RGB2BGR)
    return image


# =============================================================================
# ENGINE BASE
# =============================================================================

class Engine:
    """
    Shared lifecycle. Subclasses implement _load() -> model and
    _infer(frame) -> result; both run in a worker thread.
    """

    mode: AnalysisMode

    def __init__(self):
        self._model   = None
        self._loading: Optional[asyncio.Task] = None

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    def _load(self):
        raise NotImplementedError

    def _infer(self, frame: np.ndarray):
        raise NotImplementedError

    async def initialize(self):
        if self._model is not None:
            return
        if self._loading is None or self._loading.get_loop() is not asyncio.get_running_loop():
            self._loading = asyncio.get_running_loop().create_task(asyncio.to_thread(self._load))
        loading = self._loading
        try:
            model = await loading
        except AnalysisError:
            self._loading = None
            raise
        except Exception as e:
            self._loading = None
            raise ModelLoadError(self.mode, str(e)) from e
        if self._loading is loading:
            self._model = model
        logger.info(f"{type(self).__name__} ready")

    async def infer(self, frame):
        await self.initialize()
        frame = to_bgr(frame)
        if not isinstance(frame, np.ndarray) or frame.size == 0:
            raise InvalidImageError(self.mode, "empty or non-image frame")
        try:
            return await asyncio.to_thread(self._infer, frame)
        except AnalysisError:
            raise
        except Exception as e:
            raise InferenceError(self.mode, str(e)) from e

    def dispose(self):
        self._model   = None
        self._loading = None

    def apply_settings(self, settings: AppSettings):
        pass


# =============================================================================
# YOLO DETECTOR
# =============================================================================

class YOLODetector(Engine):
    mode = AnalysisMode.DETECTION

    def __init__(self, model_size: str = "yolov8n.pt",
                 confidence_threshold: float = 50, max_detections: int = 20):
        super().__init__()
        self.model_size           = model_size
        self.confidence_threshold = confidence_threshold     # 0-100
        self.max_detections       = max_detections

    def apply_settings(self, settings: AppSettings):
        self.confidence_threshold = settings.detection.confidence_threshold
        self.max_detections       = settings.detection.max_detections

    def _load(self):
        try:
            from ultralytics import YOLO
        except ImportError as e:
            raise ModelLoadError(
                self.mode, "ultralytics is not installed. Run: pip install ultralytics") from e
        return YOLO(self.model_size)

    def _infer(self, frame: np.ndarray) -> DetectionResult:
        start   = time.perf_counter()
        results = self._model(frame, verbose=False)[0]
        min_score = self.confidence_threshold / 100.0

        objects: List[DetectedObject] = []
        for box in results.boxes:
            cls_id = int(box.cls[0])
            conf   = float(box.conf[0])
            if conf < min_score:
                continue
            x1, y1, x2, y2 = [float(v) for v in box.xyxy[0]]
            objects.append(DetectedObject(
                bbox=(x1, y1, x2 - x1, y2 - y1),
                class_name=results.names[cls_id],
                score=conf,
            ))

        objects.sort(key=lambda o: o.score, reverse=True)
        return DetectionResult(
            objects=objects[:int(self.max_detections)],
            inference_time=(time.perf_counter() - start) * 1000.0,
        )


# =============================================================================
# YOLO CLASSIFIER
# =============================================================================

class YOLOClassifier(Engine):
    mode = AnalysisMode.CLASSIFICATION

    def __init__(self, model_size: str = "yolov8n-cls.pt",
                 top_k: int = CLASSIFICATION_TOP_K,
                 min_confidence: float = CLASSIFICATION_MIN_CONFIDENCE):
        super().__init__()
        self.model_size     = model_size
        self.top_k          = top_k
        self.min_confidence = min_confidence

    def _load(self):
        try:
            from ultralytics import YOLO
        except ImportError as e:
            raise ModelLoadError(
                self.mode, "ultralytics is not installed. Run: pip install ultralytics") from e
        return YOLO(self.model_size)

    def _infer(self, frame: np.ndarray) -> ClassificationAnalysis:
        start   = time.perf_counter()
        results = self._model(frame, verbose=False)[0]
        data    = results.probs.data
        if hasattr(data, "cpu"):
            data = data.cpu().numpy()
        scores  = np.asarray(data, dtype=np.float64).ravel()

        predictions = []
        for idx in np.argsort(-scores)[:self.top_k]:
            conf = float(scores[idx])
            if conf < self.min_confidence:
                break
            predictions.append(ClassificationPrediction(
                label=results.names[int(idx)], confidence=conf, class_id=str(int(idx))))

        return ClassificationAnalysis(
            predictions=predictions,
            inference_time=(time.perf_counter() - start) * 1000.0,
            timestamp=_now_iso(),
            image_dimensions=_frame_dims(frame),
        )


# =============================================================================
# OCR TEXT HELPERS
# =============================================================================

def _reading_order(a: TextRegion, b: TextRegion) -> float:
    if a.bbox is None or b.bbox is None:
        if a.bbox is None and b.bbox is None:
            return 0
        return -1 if a.bbox is not None else 1
    tolerance = min(a.bbox.height, b.bbox.height) * 0.5
    dy = a.bbox.y - b.bbox.y
    if abs(dy) > tolerance:
        return dy
    return a.bbox.x - b.bbox.x


def sort_by_reading_order(regions: List[TextRegion]) -> List[TextRegion]:
    """Top-to-bottom, then left-to-right within a line. Regions without a box go last."""
    return sorted(regions, key=cmp_to_key(_reading_order))


def build_full_text(regions: List[TextRegion],
                    line_threshold: float = OCR_LINE_THRESHOLD_PX) -> str:
    """Join words with spaces; start a new line when y jumps past the threshold."""
    lines: List[List[str]] = []
    current: List[str] = []
    last_y = float("-inf")

    for region in regions:
        y = region.bbox.y if region.bbox is not None else 0
        if y - last_y > line_threshold and current:
            lines.append(current)
            current = []
        current.append(region.text)
        last_y = y

    if current:
        lines.append(current)
    return "\n".join(" ".join(line) for line in lines)


# =============================================================================
# TESSERACT OCR
# =============================================================================

class TesseractOCR(Engine):
    """
    pytesseract word-level OCR. The loaded "model" is the set of installed
    language packs; a missing pack falls back to English.
    """

    mode = AnalysisMode.OCR

    def __init__(self, language: str = DEFAULT_OCR_LANGUAGE, min_confidence: float = 50,
                 tesseract_cmd: Optional[str] = None):
        super().__init__()
        self.language       = validate_language(language)
        self.min_confidence = min_confidence                # 0-100
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def apply_settings(self, settings: AppSettings):
        self.min_confidence = settings.ocr.min_confidence

    def _load(self):
        version   = pytesseract.get_tesseract_version()
        available = set(pytesseract.get_languages(config=""))
        logger.debug(f"Tesseract {version}, languages: {sorted(available)}")
        if self.language not in available:
            if self.language == DEFAULT_OCR_LANGUAGE or DEFAULT_OCR_LANGUAGE not in available:
                raise ModelLoadError(self.mode, f"language pack '{self.language}' not installed")
            logger.warning(f"Language pack '{self.language}' not installed, using English")
            self.language = DEFAULT_OCR_LANGUAGE
        return available

    async def load_language(self, language: str):
        """Switch language. Raises LanguagePackError and keeps English if the pack is missing."""
        await self.initialize()
        requested = validate_language(language)
        if requested in self._model:
            self.language = requested
            logger.info(f"Language pack loaded: {requested}")
            return
        self.language = DEFAULT_OCR_LANGUAGE
        raise LanguagePackError(language, "traineddata not installed")

    def _infer(self, frame: np.ndarray) -> OCRAnalysis:
        if self._model is None:
            raise WorkerError("engine was disposed during recognition")

        language = self.language
        start    = time.perf_counter()
        rgb      = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        data     = pytesseract.image_to_data(rgb, lang=language,
                                             output_type=pytesseract.Output.DICT)

        regions: List[TextRegion] = []
        for i in range(len(data["text"])):
            text = str(data["text"][i]).strip()
            conf = float(data["conf"][i])
            if not text or conf < self.min_confidence:
                continue
            regions.append(TextRegion(
                text=text,
                confidence=conf,
                bbox=BoundingBox(x=data["left"][i], y=data["top"][i],
                                 width=data["width"][i], height=data["height"][i]),
                language=language,
            ))

        regions = sort_by_reading_order(regions)
        return OCRAnalysis(
            text_regions=regions,
            full_text=build_full_text(regions),
            processing_time=(time.perf_counter() - start) * 1000.0,
            timestamp=_now_iso(),
            image_dimensions=_frame_dims(frame),
            language=language,
        )


# =============================================================================
# FACTORY
# =============================================================================

_MODEL_OPTIONS = {
    AnalysisMode.DETECTION:      DETECTION_MODEL_OPTIONS,
    AnalysisMode.CLASSIFICATION: CLASSIFICATION_MODEL_OPTIONS,
}


def model_weights(mode: AnalysisMode, size: str = DEFAULT_MODEL_SIZE) -> Optional[str]:
    """YOLO weights file for a mode and size; None for OCR, which has no weights."""
    options = _MODEL_OPTIONS.get(AnalysisMode(mode))
    if options is None:
        return None
    if size not in options:
        raise ValueError(f"Unknown model size: {size} (choose from {', '.join(options)})")
    return options[size]


def create_engine(mode: AnalysisMode, settings: Optional[AppSettings] = None,
                  model_size: str = DEFAULT_MODEL_SIZE) -> Engine:
    mode     = AnalysisMode(mode)
    settings = settings or AppSettings()
    weights  = model_weights(mode, model_size)
    if mode is AnalysisMode.DETECTION:
        engine = YOLODetector(weights)
    elif mode is AnalysisMode.CLASSIFICATION:
        engine = YOLOClassifier(weights)
    else:
        engine = TesseractOCR(language=settings.ocr.language)
    engine.apply_settings(settings)
    return engine
