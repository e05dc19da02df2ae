import pytest

from errors import (AnalysisError, InferenceError, InvalidImageError, LanguagePackError,
                    ModelLoadError, WorkerError, error_message)
from models import AnalysisMode


@pytest.mark.parametrize("mode, fragment", [
    (AnalysisMode.DETECTION, "object detection model"),
    (AnalysisMode.CLASSIFICATION, "image classification model"),
    (AnalysisMode.OCR, "Tesseract"),
])
def test_model_load_messages_per_mode(mode, fragment) -> None:
    err = ModelLoadError(mode, "weights missing")
    assert fragment in err.user_message()
    assert "weights missing" in str(err)
    assert err.code == "MODEL_LOAD_FAILED"
    assert err.is_recoverable()


def test_inference_errors_are_not_recoverable() -> None:
    err = InferenceError("classification", "shape mismatch")
    assert err.mode is AnalysisMode.CLASSIFICATION
    assert err.user_message() == "Unable to classify the image. Please try with a different image."
    assert not err.is_recoverable()


def test_ocr_specific_errors() -> None:
    worker = WorkerError("terminated")
    assert worker.mode is AnalysisMode.OCR
    assert worker.is_recoverable()

    pack = LanguagePackError("chi_sim", "download failed")
    assert pack.code == "LANGUAGE_PACK_FAILED"
    assert "chi_sim" in pack.user_message()


def test_invalid_image() -> None:
    err = InvalidImageError(AnalysisMode.DETECTION, "zero size")
    assert "valid image file" in err.user_message()
    assert not err.is_recoverable()


def test_base_error_recoverability_follows_code() -> None:
    assert AnalysisError("slow", AnalysisMode.OCR, code="TIMEOUT").is_recoverable()
    assert not AnalysisError("bad", AnalysisMode.OCR).is_recoverable()


def test_error_message_for_any_exception() -> None:
    assert error_message(InferenceError(AnalysisMode.OCR, "x")).startswith("Unable to extract text")
    assert error_message(ValueError("boom")) == "boom"
    assert error_message(RuntimeError()) == "An unexpected error occurred. Please try again."
