# =============================================================================
# errors.py
# Analysis error types with mode context and short user-facing messages.
# Raw technical detail stays in str(exc) and the log; user_message() is what
# the interface shows.
# =============================================================================

from typing import Optional

from models import AnalysisMode


class AnalysisError(Exception):
    """Base error for all analysis failures."""

    code = "ANALYSIS_FAILED"

    def __init__(self, message: str, mode: AnalysisMode, code: Optional[str] = None):
        super().__init__(message)
        self.mode = AnalysisMode(mode)
        if code is not None:
            self.code = code

    def user_message(self) -> str:
        return str(self)

    def is_recoverable(self) -> bool:
        return self.code in ("NETWORK_ERROR", "TIMEOUT")


class ModelLoadError(AnalysisError):
    """The engine failed to initialize. Retrying may help."""

    code = "MODEL_LOAD_FAILED"

    _MESSAGES = {
        AnalysisMode.DETECTION:      "Unable to load the object detection model. "
                                     "Check that the model weights are available and try again.",
        AnalysisMode.CLASSIFICATION: "Unable to load the image classification model. "
                                     "Check that the model weights are available and try again.",
        AnalysisMode.OCR:            "Unable to load the text recognition engine. "
                                     "Check that Tesseract is installed and try again.",
    }

    def __init__(self, mode: AnalysisMode, reason: str):
        super().__init__(f"Failed to load {AnalysisMode(mode).value} model: {reason}", mode)

    def user_message(self) -> str:
        return self._MESSAGES[self.mode]

    def is_recoverable(self) -> bool:
        return True


class InferenceError(AnalysisError):
    """A single inference call failed. A new frame or image is the retry."""

    code = "INFERENCE_FAILED"

    _MESSAGES = {
        AnalysisMode.DETECTION:      "Unable to detect objects in the image. "
                                     "Please try with a different image.",
        AnalysisMode.CLASSIFICATION: "Unable to classify the image. "
                                     "Please try with a different image.",
        AnalysisMode.OCR:            "Unable to extract text from the image. "
                                     "Please ensure the image contains readable text.",
    }

    def __init__(self, mode: AnalysisMode, reason: str):
        super().__init__(f"{AnalysisMode(mode).value} inference failed: {reason}", mode)

    def user_message(self) -> str:
        return self._MESSAGES[self.mode]

    def is_recoverable(self) -> bool:
        return False


class WorkerError(AnalysisError):
    """The OCR worker died or was never created. Recreating it recovers."""

    code = "WORKER_FAILED"

    def __init__(self, reason: str):
        super().__init__(f"OCR worker error: {reason}", AnalysisMode.OCR)

    def user_message(self) -> str:
        return "The text recognition engine stopped unexpectedly. Please try again."

    def is_recoverable(self) -> bool:
        return True


class LanguagePackError(AnalysisError):
    """A non-default OCR language failed to load; English remains usable."""

    code = "LANGUAGE_PACK_FAILED"

    def __init__(self, language: str, reason: str):
        super().__init__(f"Failed to load language pack '{language}': {reason}",
                         AnalysisMode.OCR)
        self.language = language

    def user_message(self) -> str:
        return (f"Unable to load the {self.language} language pack. "
                f"Text recognition will continue with English.")

    def is_recoverable(self) -> bool:
        return True


class InvalidImageError(AnalysisError):
    """The media could not be decoded or has no pixels."""

    code = "INVALID_IMAGE"

    def __init__(self, mode: AnalysisMode, reason: str):
        super().__init__(f"Invalid image: {reason}", mode)

    def user_message(self) -> str:
        return "The image could not be processed. Please ensure it is a valid image file."

    def is_recoverable(self) -> bool:
        return False


def error_message(exc: BaseException) -> str:
    """Convert any exception into a short message fit for the interface."""
    if isinstance(exc, AnalysisError):
        return exc.user_message()
    text = str(exc)
    if text:
        return text
    return "An unexpected error occurred. Please try again."
