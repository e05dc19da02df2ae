import json

import pytest

from constants import SETTINGS_STORAGE_KEY
from models import DEFAULT_SETTINGS, AppSettings, DetectionSettings
from settings import (SettingsRepository, clamp_setting, fps_quality_tier, validate_language,
                      validate_settings)
from storage import MemoryStorage


# -- clamp_setting ------------------------------------------------------------

def test_clamp_setting_limits_to_registered_range() -> None:
    assert clamp_setting(-5, "confidenceThreshold") == 0
    assert clamp_setting(150, "confidenceThreshold") == 100
    assert clamp_setting(0, "maxDetections") == 1
    assert clamp_setting(51, "maxDetections") == 50
    assert clamp_setting(999, "videoFPS") == 15
    assert clamp_setting(7, "videoFPS") == 7


def test_clamp_setting_maps_nan_to_minimum() -> None:
    assert clamp_setting(float("nan"), "maxDetections") == 1
    assert clamp_setting(float("nan"), "minConfidence") == 0


def test_clamp_setting_rejects_unknown_setting() -> None:
    with pytest.raises(KeyError):
        clamp_setting(1, "brightness")


# -- validate_settings --------------------------------------------------------

def test_validate_empty_settings_equals_defaults() -> None:
    assert validate_settings({}) == DEFAULT_SETTINGS
    assert validate_settings(None) == DEFAULT_SETTINGS
    assert validate_settings({}) == AppSettings(
        detection=DetectionSettings(confidence_threshold=50, max_detections=20,
                                    show_labels=True, show_scores=True),
    )


def test_validate_settings_checks_each_field_independently() -> None:
    settings = validate_settings({
        "detection": {"confidenceThreshold": 150, "maxDetections": "10", "showLabels": "yes"},
        "ocr": {"language": " FRA ", "minConfidence": -3},
        "performance": {"videoFPS": 0},
        "version": 1,
    })

    assert settings.detection.confidence_threshold == 100
    assert settings.detection.max_detections == 10
    assert settings.detection.show_labels is True
    assert settings.detection.show_scores is True
    assert settings.ocr.language == "fra"
    assert settings.ocr.min_confidence == 0
    assert settings.performance.video_fps == 1


def test_validate_settings_uses_defaults_for_unusable_numbers() -> None:
    settings = validate_settings({
        "detection": {"confidenceThreshold": float("nan"), "maxDetections": True},
        "ocr": {"minConfidence": "high"},
        "performance": {"videoFPS": None},
    })

    assert settings.detection.confidence_threshold == 50
    assert settings.detection.max_detections == 20
    assert settings.ocr.min_confidence == 50
    assert settings.performance.video_fps == 5


def test_validate_settings_ignores_malformed_sections() -> None:
    settings = validate_settings({"detection": "broken", "ocr": [1, 2], "version": "one"})
    assert settings == DEFAULT_SETTINGS


def test_validate_settings_keeps_integral_values_integral() -> None:
    settings = validate_settings({"performance": {"videoFPS": 7.0}})
    assert settings.performance.video_fps == 7
    assert isinstance(settings.performance.video_fps, int)

    settings = validate_settings({"performance": {"videoFPS": 7.5}})
    assert settings.performance.video_fps == 7.5


def test_validate_settings_accepts_app_settings() -> None:
    original = AppSettings(detection=DetectionSettings(confidence_threshold=70))
    assert validate_settings(original) == original


def test_validate_language() -> None:
    assert validate_language("jpn") == "jpn"
    assert validate_language("Chi_Sim") == "chi_sim"
    assert validate_language("klingon") == "eng"
    assert validate_language(None) == "eng"
    assert validate_language(3) == "eng"


@pytest.mark.parametrize("fps, tier", [
    (1, "battery_saver"),
    (3, "battery_saver"),
    (5, "balanced"),
    (7, "balanced"),
    (10, "smooth"),
    (15, "high_performance"),
])
def test_fps_quality_tier(fps, tier) -> None:
    assert fps_quality_tier(fps) == tier


# -- SettingsRepository -------------------------------------------------------

def test_load_returns_defaults_when_nothing_stored(storage) -> None:
    assert SettingsRepository(storage).load_settings() == DEFAULT_SETTINGS


def test_save_and_load_round_trip(storage) -> None:
    repo = SettingsRepository(storage)
    wanted = validate_settings({
        "detection": {"confidenceThreshold": 65, "showScores": False},
        "ocr": {"language": "deu"},
        "performance": {"videoFPS": 12},
    })

    assert repo.save_settings(wanted) is True
    assert repo.load_settings() == wanted


def test_save_validates_before_writing(storage) -> None:
    repo = SettingsRepository(storage)
    assert repo.save_settings({"performance": {"videoFPS": 100}}) is True

    stored = json.loads(storage.get(SETTINGS_STORAGE_KEY))
    assert stored["performance"]["videoFPS"] == 15
    assert stored["detection"]["confidenceThreshold"] == 50
    assert stored["version"] == 1


def test_load_ignores_corrupt_record(storage, log_messages) -> None:
    storage.set(SETTINGS_STORAGE_KEY, "{not json")
    assert SettingsRepository(storage).load_settings() == DEFAULT_SETTINGS
    assert any(level == "ERROR" for level, _ in log_messages)


def test_load_migrates_older_version(storage, log_messages) -> None:
    storage.set(SETTINGS_STORAGE_KEY, json.dumps({
        "detection": {"confidenceThreshold": 30},
        "version": 0,
    }))

    settings = SettingsRepository(storage).load_settings()

    assert settings.detection.confidence_threshold == 30
    assert settings.version == 1
    assert ("INFO", "Migrating settings from version 0 to 1") in log_messages


def test_unavailable_backend_falls_back(broken_storage) -> None:
    repo = SettingsRepository(broken_storage)
    assert repo.is_available() is False
    assert repo.load_settings() == DEFAULT_SETTINGS
    assert repo.save_settings(DEFAULT_SETTINGS) is False
    repo.reset_to_defaults()


def test_save_reports_quota_failure() -> None:
    repo = SettingsRepository(MemoryStorage(quota_bytes=16))
    assert repo.is_available() is True
    assert repo.save_settings(DEFAULT_SETTINGS) is False


def test_reset_deletes_record(storage) -> None:
    repo = SettingsRepository(storage)
    repo.save_settings({"performance": {"videoFPS": 9}})
    repo.reset_to_defaults()

    assert storage.get(SETTINGS_STORAGE_KEY) is None
    assert repo.load_settings() == DEFAULT_SETTINGS
