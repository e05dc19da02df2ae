# =============================================================================
# models.py
# Dataclasses for analysis modes, processing state, the three result types,
# history entries, the orchestration aggregate, and user settings.
#
# Result and history dataclasses carry to_dict()/from_dict() so that the
# persisted JSON keeps its camelCase field names ("class", "bbox",
# "inferenceTime", "imageDataURL", ...) while Python code uses snake_case.
# =============================================================================

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from constants import (SETTINGS_VERSION,
                       DEFAULT_CONFIDENCE_THRESHOLD, DEFAULT_MAX_DETECTIONS,
                       DEFAULT_SHOW_LABELS, DEFAULT_SHOW_SCORES,
                       DEFAULT_OCR_LANGUAGE, DEFAULT_OCR_MIN_CONFIDENCE,
                       DEFAULT_VIDEO_FPS)


# =============================================================================
# MODES AND PROCESSING STATE
# =============================================================================

class AnalysisMode(str, Enum):
    DETECTION      = "detection"
    CLASSIFICATION = "classification"
    OCR            = "ocr"


ALL_MODES: Tuple[AnalysisMode, ...] = tuple(AnalysisMode)


class ProcessingStatus(str, Enum):
    IDLE       = "idle"
    LOADING    = "loading"
    PROCESSING = "processing"
    COMPLETE   = "complete"
    ERROR      = "error"


@dataclass(frozen=True)
class ProcessingState:
    status: ProcessingStatus = ProcessingStatus.IDLE
    message: Optional[str] = None
    progress: Optional[float] = None      # 0-100, model loading only


IDLE_STATE = ProcessingState()


# =============================================================================
# GEOMETRY
# =============================================================================

@dataclass(frozen=True)
class ImageDimensions:
    width: int
    height: int

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict) -> "ImageDimensions":
        return cls(width=data["width"], height=data["height"])


@dataclass(frozen=True)
class BoundingBox:
    """Pixel-space box in source-image coordinates."""
    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict) -> "BoundingBox":
        return cls(x=data["x"], y=data["y"], width=data["width"], height=data["height"])


# =============================================================================
# DETECTION
# =============================================================================

@dataclass(frozen=True)
class DetectedObject:
    bbox: Tuple[float, float, float, float]   # (x, y, width, height)
    class_name: str
    score: float                              # 0-1

    def to_dict(self) -> dict:
        return {"bbox": list(self.bbox), "class": self.class_name, "score": self.score}

    @classmethod
    def from_dict(cls, data: dict) -> "DetectedObject":
        x, y, w, h = data["bbox"]
        return cls(bbox=(x, y, w, h), class_name=data["class"], score=data["score"])


@dataclass(frozen=True)
class DetectionResult:
    objects: List[DetectedObject] = field(default_factory=list)
    inference_time: float = 0.0               # milliseconds

    def to_dict(self) -> dict:
        return {
            "objects":       [o.to_dict() for o in self.objects],
            "inferenceTime": self.inference_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DetectionResult":
        return cls(
            objects=[DetectedObject.from_dict(o) for o in data["objects"]],
            inference_time=data.get("inferenceTime", 0.0),
        )


# =============================================================================
# CLASSIFICATION
# =============================================================================

@dataclass(frozen=True)
class ClassificationPrediction:
    label: str
    confidence: float                         # 0-1
    class_id: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"label": self.label, "confidence": self.confidence}
        if self.class_id is not None:
            d["classId"] = self.class_id
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "ClassificationPrediction":
        return cls(label=data["label"], confidence=data["confidence"],
                   class_id=data.get("classId"))


@dataclass(frozen=True)
class ClassificationAnalysis:
    """Top-K predictions, sorted by confidence descending."""
    predictions: List[ClassificationPrediction]
    inference_time: float
    timestamp: str
    image_dimensions: ImageDimensions

    def to_dict(self) -> dict:
        return {
            "predictions":     [p.to_dict() for p in self.predictions],
            "inferenceTime":   self.inference_time,
            "timestamp":       self.timestamp,
            "imageDimensions": self.image_dimensions.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClassificationAnalysis":
        return cls(
            predictions=[ClassificationPrediction.from_dict(p) for p in data["predictions"]],
            inference_time=data.get("inferenceTime", 0.0),
            timestamp=data.get("timestamp", ""),
            image_dimensions=ImageDimensions.from_dict(data["imageDimensions"]),
        )


# =============================================================================
# OCR
# =============================================================================

@dataclass(frozen=True)
class TextRegion:
    text: str
    confidence: float                         # 0-100 (Tesseract scale)
    bbox: Optional[BoundingBox] = None
    language: Optional[str] = None

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {"text": self.text, "confidence": self.confidence}
        if self.bbox is not None:
            d["bbox"] = self.bbox.to_dict()
        if self.language is not None:
            d["lang"] = self.language
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "TextRegion":
        bbox = data.get("bbox")
        return cls(
            text=data["text"],
            confidence=data["confidence"],
            bbox=BoundingBox.from_dict(bbox) if bbox else None,
            language=data.get("lang"),
        )


@dataclass(frozen=True)
class OCRAnalysis:
    text_regions: List[TextRegion]            # reading order
    full_text: str
    processing_time: float
    timestamp: str
    image_dimensions: ImageDimensions
    language: str

    def to_dict(self) -> dict:
        return {
            "textRegions":     [r.to_dict() for r in self.text_regions],
            "fullText":        self.full_text,
            "processingTime":  self.processing_time,
            "timestamp":       self.timestamp,
            "imageDimensions": self.image_dimensions.to_dict(),
            "language":        self.language,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OCRAnalysis":
        return cls(
            text_regions=[TextRegion.from_dict(r) for r in data["textRegions"]],
            full_text=data["fullText"],
            processing_time=data.get("processingTime", 0.0),
            timestamp=data.get("timestamp", ""),
            image_dimensions=ImageDimensions.from_dict(data["imageDimensions"]),
            language=data.get("language", DEFAULT_OCR_LANGUAGE),
        )


AnalysisResult = Union[DetectionResult, ClassificationAnalysis, OCRAnalysis]

RESULT_TYPES = {
    AnalysisMode.DETECTION:      DetectionResult,
    AnalysisMode.CLASSIFICATION: ClassificationAnalysis,
    AnalysisMode.OCR:            OCRAnalysis,
}


def result_mode(result: AnalysisResult) -> AnalysisMode:
    """Return the mode tag matching a result's variant."""
    for mode, cls in RESULT_TYPES.items():
        if isinstance(result, cls):
            return mode
    raise TypeError(f"Not an analysis result: {type(result).__name__}")


def result_from_dict(mode: AnalysisMode, data: dict) -> AnalysisResult:
    return RESULT_TYPES[AnalysisMode(mode)].from_dict(data)


# =============================================================================
# ORCHESTRATION AGGREGATE
# =============================================================================

@dataclass
class VideoStream:
    is_active: bool
    fps: float
    loop_handle: Optional[Callable[[], None]] = None   # cancels the frame loop


@dataclass
class AnalysisState:
    active_mode: AnalysisMode = AnalysisMode.DETECTION
    processing: Dict[AnalysisMode, ProcessingState] = field(
        default_factory=lambda: {m: IDLE_STATE for m in ALL_MODES})
    results: Dict[AnalysisMode, Optional[AnalysisResult]] = field(
        default_factory=lambda: {m: None for m in ALL_MODES})
    media: Any = None                                  # StillImage / CameraStream
    video_stream: Optional[VideoStream] = None

    def copy(self) -> "AnalysisState":
        """Detached copy. Media and loop handle are shared, never cloned."""
        return AnalysisState(
            active_mode=self.active_mode,
            processing=dict(self.processing),
            results=dict(self.results),
            media=self.media,
            video_stream=replace(self.video_stream) if self.video_stream else None,
        )


# =============================================================================
# HISTORY
# =============================================================================

@dataclass(frozen=True)
class HistoryEntryInput:
    analysis_type: AnalysisMode
    image_data_url: str
    results: AnalysisResult
    image_dimensions: ImageDimensions


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    timestamp: str                            # ISO 8601
    analysis_type: AnalysisMode
    image_data_url: str                       # compressed image
    results: AnalysisResult
    image_dimensions: ImageDimensions         # of the stored image

    def to_dict(self) -> dict:
        return {
            "id":              self.id,
            "timestamp":       self.timestamp,
            "analysisType":    self.analysis_type.value,
            "imageDataURL":    self.image_data_url,
            "results":         self.results.to_dict(),
            "imageDimensions": self.image_dimensions.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        mode = AnalysisMode(data["analysisType"])
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            analysis_type=mode,
            image_data_url=data["imageDataURL"],
            results=result_from_dict(mode, data["results"]),
            image_dimensions=ImageDimensions.from_dict(data["imageDimensions"]),
        )


@dataclass(frozen=True)
class HistoryState:
    entries: List[HistoryEntry] = field(default_factory=list)   # newest first
    selected_entry_id: Optional[str] = None


@dataclass(frozen=True)
class StorageUsage:
    used_bytes: int
    available_bytes: int


# =============================================================================
# SETTINGS
# =============================================================================

@dataclass(frozen=True)
class DetectionSettings:
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD   # 0-100
    max_detections: int = DEFAULT_MAX_DETECTIONS                 # 1-50
    show_labels: bool = DEFAULT_SHOW_LABELS
    show_scores: bool = DEFAULT_SHOW_SCORES


@dataclass(frozen=True)
class OCRSettings:
    language: str = DEFAULT_OCR_LANGUAGE
    min_confidence: float = DEFAULT_OCR_MIN_CONFIDENCE           # 0-100


@dataclass(frozen=True)
class PerformanceSettings:
    video_fps: float = DEFAULT_VIDEO_FPS                         # 1-15


@dataclass(frozen=True)
class AppSettings:
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    ocr: OCRSettings = field(default_factory=OCRSettings)
    performance: PerformanceSettings = field(default_factory=PerformanceSettings)
    version: int = SETTINGS_VERSION

    def to_dict(self) -> dict:
        return {
            "detection": {
                "confidenceThreshold": self.detection.confidence_threshold,
                "maxDetections":       self.detection.max_detections,
                "showLabels":          self.detection.show_labels,
                "showScores":          self.detection.show_scores,
            },
            "ocr": {
                "language":      self.ocr.language,
                "minConfidence": self.ocr.min_confidence,
            },
            "performance": {
                "videoFPS": self.performance.video_fps,
            },
            "version": self.version,
        }


DEFAULT_SETTINGS = AppSettings()
