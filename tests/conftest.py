import json
from typing import List, Tuple

import pytest
from loguru import logger
from PIL import Image

from media import encode_data_url
from models import (BoundingBox, ClassificationAnalysis, ClassificationPrediction,
                    DetectedObject, DetectionResult, ImageDimensions, OCRAnalysis, TextRegion)
from storage import MemoryStorage, QuotaExceededError, StorageUnavailableError


class BrokenStorage:
    """Backend that refuses every operation."""

    def get(self, key):
        raise StorageUnavailableError("disabled")

    def set(self, key, value):
        raise StorageUnavailableError("disabled")

    def delete(self, key):
        raise StorageUnavailableError("disabled")


class EntryLimitStorage(MemoryStorage):
    """Raises QuotaExceededError when a JSON list under `key` is longer than `limit`."""

    def __init__(self, key: str, limit: int):
        super().__init__()
        self.key = key
        self.limit = limit

    def set(self, key, value):
        if key == self.key and len(json.loads(value)) > self.limit:
            raise QuotaExceededError("too many entries")
        super().set(key, value)


class FakeTimer:
    def __init__(self, interval: float, fn):
        self.interval = interval
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.fn()


class ManualFrameClock:
    """Frame clock driven by the test, one tick at a time."""

    def __init__(self):
        self.callbacks = {}
        self.cancelled: List[int] = []
        self._next = 0

    def request_frame(self, callback):
        self._next += 1
        self.callbacks[self._next] = callback
        return self._next

    def cancel_frame(self, handle) -> None:
        self.cancelled.append(handle)
        self.callbacks.pop(handle, None)

    def tick(self, timestamp: float) -> None:
        pending = list(self.callbacks.values())
        self.callbacks.clear()
        for cb in pending:
            cb(timestamp)


def make_data_url(width: int, height: int, color=(200, 30, 30)) -> str:
    return encode_data_url(Image.new("RGB", (width, height), color), fmt="PNG")


def make_detection(bbox=(100, 100, 50, 50), name="dog", score=0.9) -> DetectionResult:
    return DetectionResult(
        objects=[DetectedObject(bbox=bbox, class_name=name, score=score)],
        inference_time=42,
    )


def make_classification(width=640, height=480) -> ClassificationAnalysis:
    return ClassificationAnalysis(
        predictions=[
            ClassificationPrediction(label="golden retriever", confidence=0.8, class_id="207"),
            ClassificationPrediction(label="labrador", confidence=0.1, class_id="208"),
        ],
        inference_time=12.5,
        timestamp="2024-01-01T00:00:00.000Z",
        image_dimensions=ImageDimensions(width, height),
    )


def make_ocr(width=1000, height=500) -> OCRAnalysis:
    regions = [
        TextRegion(text="Hello", confidence=91, bbox=BoundingBox(100, 50, 80, 20), language="eng"),
        TextRegion(text="world", confidence=88, bbox=BoundingBox(200, 52, 90, 20), language="eng"),
    ]
    return OCRAnalysis(
        text_regions=regions,
        full_text="Hello world",
        processing_time=300,
        timestamp="2024-01-01T00:00:00.000Z",
        image_dimensions=ImageDimensions(width, height),
        language="eng",
    )


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def broken_storage() -> BrokenStorage:
    return BrokenStorage()


@pytest.fixture
def timers():
    created: List[FakeTimer] = []

    def factory(interval, fn):
        timer = FakeTimer(interval, fn)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def log_messages():
    records: List[Tuple[str, str]] = []
    handler_id = logger.add(
        lambda m: records.append((m.record["level"].name, m.record["message"])),
        level="DEBUG",
    )
    yield records
    logger.remove(handler_id)
