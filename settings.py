# =============================================================================
# settings.py
# Settings validation (pure, total functions) and the SettingsRepository
# that loads/saves the single settings record in a key-value backend.
# =============================================================================

import json
import math
from typing import Any, Mapping, Optional, Union

from loguru import logger

from constants import (SETTINGS_STORAGE_KEY, SETTINGS_CONSTRAINTS, SETTINGS_VERSION,
                       FPS_QUALITY_THRESHOLDS, SUPPORTED_LANGUAGES, DEFAULT_OCR_LANGUAGE)
from models import (AppSettings, DetectionSettings, OCRSettings, PerformanceSettings,
                    DEFAULT_SETTINGS)
from storage import probe_storage


# =============================================================================
# VALIDATION
# =============================================================================

def clamp_setting(value: float, setting: str) -> float:
    """
    Clamp a value to the closed range registered for `setting`.
    NaN has no position in the range and clamps to the minimum.
    """
    lo, hi = SETTINGS_CONSTRAINTS[setting]
    if isinstance(value, float) and math.isnan(value):
        return lo
    return max(lo, min(hi, value))


def validate_language(language: Any) -> str:
    """Normalize an OCR language code; anything unsupported falls back to English."""
    if not isinstance(language, str):
        return DEFAULT_OCR_LANGUAGE
    normalized = language.strip().lower()
    if normalized in SUPPORTED_LANGUAGES:
        return normalized
    return DEFAULT_OCR_LANGUAGE


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _tidy(number: float):
    # 50.0 -> 50 so the persisted JSON keeps integer fields integral
    if math.isfinite(number) and number == int(number):
        return int(number)
    return number


def _parse_and_clamp(value: Any, setting: str, default: float):
    number = _to_number(value)
    if number is None:
        return default
    return _tidy(clamp_setting(number, setting))


def _section(settings: Mapping, name: str) -> Mapping:
    section = settings.get(name)
    return section if isinstance(section, Mapping) else {}


def _flag(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def validate_settings(settings: Union[Mapping, AppSettings, None]) -> AppSettings:
    """
    Deep-merge raw settings (persisted camelCase shape, or an AppSettings)
    with the defaults. Every present field is validated on its own; missing,
    malformed and NaN fields take their default. Never raises.
    """
    if isinstance(settings, AppSettings):
        settings = settings.to_dict()
    if not isinstance(settings, Mapping):
        settings = {}

    detection   = _section(settings, "detection")
    ocr         = _section(settings, "ocr")
    performance = _section(settings, "performance")
    defaults    = DEFAULT_SETTINGS

    version = settings.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        version = defaults.version

    return AppSettings(
        detection=DetectionSettings(
            confidence_threshold=_parse_and_clamp(
                detection.get("confidenceThreshold"), "confidenceThreshold",
                defaults.detection.confidence_threshold),
            max_detections=_parse_and_clamp(
                detection.get("maxDetections"), "maxDetections",
                defaults.detection.max_detections),
            show_labels=_flag(detection.get("showLabels"), defaults.detection.show_labels),
            show_scores=_flag(detection.get("showScores"), defaults.detection.show_scores),
        ),
        ocr=OCRSettings(
            language=validate_language(ocr.get("language")),
            min_confidence=_parse_and_clamp(
                ocr.get("minConfidence"), "minConfidence",
                defaults.ocr.min_confidence),
        ),
        performance=PerformanceSettings(
            video_fps=_parse_and_clamp(
                performance.get("videoFPS"), "videoFPS",
                defaults.performance.video_fps),
        ),
        version=version,
    )


# -- FPS quality tiers --------------------------------------------------------

def validate_fps_thresholds():
    """Raise ValueError if the FPS tiers are outside the FPS range or not ascending."""
    lo, hi = SETTINGS_CONSTRAINTS["videoFPS"]
    low    = FPS_QUALITY_THRESHOLDS["low"]
    medium = FPS_QUALITY_THRESHOLDS["medium"]
    high   = FPS_QUALITY_THRESHOLDS["high"]
    if low < lo or high > hi:
        raise ValueError(
            f"FPS quality thresholds [{low}, {medium}, {high}] must be within "
            f"min-max range [{lo}, {hi}]")
    if not (low < medium < high):
        raise ValueError(
            f"FPS quality thresholds must be ascending: "
            f"low ({low}) < medium ({medium}) < high ({high})")


def fps_quality_tier(fps: float) -> str:
    if fps <= FPS_QUALITY_THRESHOLDS["low"]:
        return "battery_saver"
    if fps <= FPS_QUALITY_THRESHOLDS["medium"]:
        return "balanced"
    if fps <= FPS_QUALITY_THRESHOLDS["high"]:
        return "smooth"
    return "high_performance"


validate_fps_thresholds()


# =============================================================================
# REPOSITORY
# =============================================================================

class SettingsRepository:
    """
    Single owner of the persisted settings record. Every failure is logged
    and turned into a safe return value; callers never see an exception.
    """

    def __init__(self, storage, key: str = SETTINGS_STORAGE_KEY):
        self.storage = storage
        self.key     = key

    def is_available(self) -> bool:
        return probe_storage(self.storage)

    def load_settings(self) -> AppSettings:
        if not self.is_available():
            logger.warning("Settings storage not available, using default settings")
            return DEFAULT_SETTINGS

        try:
            stored = self.storage.get(self.key)
            if not stored:
                return DEFAULT_SETTINGS
            parsed = json.loads(stored)
        except Exception as e:
            logger.error(f"Failed to load settings: {e}")
            return DEFAULT_SETTINGS

        if not isinstance(parsed, dict):
            logger.warning("Stored settings are not an object, using default settings")
            return DEFAULT_SETTINGS

        if parsed.get("version") != SETTINGS_VERSION:
            # Only the current shape exists so far; validation fills the gaps.
            logger.info(f"Migrating settings from version {parsed.get('version')} "
                        f"to {SETTINGS_VERSION}")
            parsed = dict(parsed, version=SETTINGS_VERSION)

        return validate_settings(parsed)

    def save_settings(self, settings: Union[AppSettings, Mapping]) -> bool:
        if not self.is_available():
            logger.warning("Settings storage not available, settings not persisted")
            return False

        try:
            validated = validate_settings(settings)
            self.storage.set(self.key, json.dumps(validated.to_dict()))
            return True
        except Exception as e:
            logger.error(f"Failed to save settings: {e}")
            return False

    def reset_to_defaults(self):
        try:
            self.storage.delete(self.key)
        except Exception as e:
            logger.error(f"Failed to reset settings: {e}")
