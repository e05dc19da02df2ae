import asyncio
import json
import re
import time
from dataclasses import replace
from datetime import datetime, timezone

from conftest import (EntryLimitStorage, make_classification, make_data_url, make_detection,
                      make_ocr)
from constants import HISTORY_STORAGE_KEY, STORAGE_QUOTA_BYTES
from history import (HistoryRepository, filter_valid, generate_id, is_valid_entry,
                     rescale_result)
from media import decode_data_url
from models import AnalysisMode, BoundingBox, HistoryEntryInput, ImageDimensions, TextRegion


def _entry_dict(**overrides) -> dict:
    entry = {
        "id": "abc",
        "timestamp": "2024-01-01T00:00:00.000Z",
        "analysisType": "detection",
        "imageDataURL": "data:image/jpeg;base64,AAAA",
        "results": {
            "objects": [{"bbox": [1, 2, 3, 4], "class": "dog", "score": 0.9}],
            "inferenceTime": 10,
        },
        "imageDimensions": {"width": 100, "height": 80},
    }
    entry.update(overrides)
    return entry


def _input(width=40, height=30, result=None, mode=AnalysisMode.DETECTION,
           data_url=None) -> HistoryEntryInput:
    return HistoryEntryInput(
        analysis_type=mode,
        image_data_url=data_url or make_data_url(width, height),
        results=result or make_detection(bbox=(4, 4, 10, 10)),
        image_dimensions=ImageDimensions(width, height),
    )


def _counter_ids():
    counter = iter(range(1, 1000))
    return lambda: f"id-{next(counter)}"


# -- Validation ---------------------------------------------------------------

def test_valid_entries_pass() -> None:
    assert is_valid_entry(_entry_dict())
    assert is_valid_entry(_entry_dict(
        analysisType="classification",
        results={"predictions": [{"label": "cat", "confidence": 0.7}]},
    ))
    assert is_valid_entry(_entry_dict(
        analysisType="ocr",
        results={"fullText": "hi", "textRegions": []},
    ))


def test_invalid_entries_are_rejected() -> None:
    assert not is_valid_entry(None)
    assert not is_valid_entry("entry")
    assert not is_valid_entry(_entry_dict(id=5))
    assert not is_valid_entry(_entry_dict(analysisType="segmentation"))
    assert not is_valid_entry(_entry_dict(imageDataURL=None))
    assert not is_valid_entry(_entry_dict(results=None))
    assert not is_valid_entry(_entry_dict(imageDimensions={"width": True, "height": 80}))
    assert not is_valid_entry(_entry_dict(imageDimensions={"width": "100", "height": 80}))
    assert not is_valid_entry(_entry_dict(
        results={"objects": [{"bbox": [1, 2, 3], "class": "dog", "score": 0.9}]}))
    assert not is_valid_entry(_entry_dict(
        analysisType="classification", results={"predictions": [{"label": "cat"}]}))
    assert not is_valid_entry(_entry_dict(
        analysisType="ocr", results={"fullText": 3, "textRegions": []}))


def test_filter_valid_keeps_order_and_never_raises() -> None:
    good_a = _entry_dict(id="a")
    good_b = _entry_dict(id="b")
    assert filter_valid([good_a, {"id": "x"}, 42, good_b]) == [good_a, good_b]
    assert filter_valid({"id": "a"}) == []
    assert filter_valid(None) == []


# -- Rescaling ----------------------------------------------------------------

def test_rescale_detection_rounds_every_component() -> None:
    scaled = rescale_result(make_detection(bbox=(101, 99, 52, 47)), 0.2)
    assert scaled.objects[0].bbox == (20, 20, 10, 9)
    assert scaled.objects[0].class_name == "dog"
    assert scaled.inference_time == 42


def test_rescale_ocr_scales_boxes_and_dimensions() -> None:
    scaled = rescale_result(make_ocr(width=1000, height=500), 0.4)
    assert scaled.text_regions[0].bbox == BoundingBox(40, 20, 32, 8)
    assert scaled.image_dimensions == ImageDimensions(400, 200)
    assert scaled.full_text == "Hello world"


def test_rescale_classification_scales_dimensions() -> None:
    scaled = rescale_result(make_classification(width=640, height=480), 0.5)
    assert scaled.image_dimensions == ImageDimensions(320, 240)
    assert scaled.predictions[0].label == "golden retriever"


def test_generate_id_is_uuid4() -> None:
    assert re.fullmatch(
        r"[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}",
        generate_id())


# -- Repository reads ---------------------------------------------------------

def test_get_entries_drops_invalid_records(storage, log_messages) -> None:
    storage.set(HISTORY_STORAGE_KEY, json.dumps([_entry_dict(id="keep"), {"id": "broken"}]))

    entries = HistoryRepository(storage).get_entries()

    assert [e.id for e in entries] == ["keep"]
    assert entries[0].results.objects[0].bbox == (1, 2, 3, 4)
    assert any(level == "WARNING" for level, _ in log_messages)


def test_get_entries_handles_corrupt_and_non_list_blobs(storage) -> None:
    repo = HistoryRepository(storage)
    storage.set(HISTORY_STORAGE_KEY, "[{oops")
    assert repo.get_entries() == []
    storage.set(HISTORY_STORAGE_KEY, json.dumps({"entries": []}))
    assert repo.get_entries() == []


def test_unavailable_backend(broken_storage) -> None:
    repo = HistoryRepository(broken_storage)
    assert repo.is_available() is False
    assert repo.get_entries() == []
    assert repo.get_storage_usage() is None
    assert asyncio.run(repo.add_entry(_input())) is None
    repo.clear_history()


# -- Repository writes --------------------------------------------------------

def test_add_entry_compresses_and_rescales_large_image(storage) -> None:
    repo = HistoryRepository(storage, max_thumbnail_width=400)
    entry_input = _input(width=2000, height=1500, result=make_detection(bbox=(100, 100, 50, 50)))

    entry = asyncio.run(repo.add_entry(entry_input))

    assert entry is not None
    assert entry.image_dimensions == ImageDimensions(400, 300)
    assert entry.results.objects[0].bbox == (20, 20, 10, 10)
    assert entry.image_data_url.startswith("data:image/jpeg;base64,")
    assert decode_data_url(entry.image_data_url).size == (400, 300)
    assert repo.get_entries()[0] == entry


def test_add_entry_keeps_small_image_geometry(storage) -> None:
    repo = HistoryRepository(storage)
    entry = asyncio.run(repo.add_entry(_input(width=40, height=30)))

    assert entry.image_dimensions == ImageDimensions(40, 30)
    assert entry.results.objects[0].bbox == (4, 4, 10, 10)


def test_add_entry_stamps_id_and_timestamp(storage) -> None:
    repo = HistoryRepository(
        storage,
        id_factory=lambda: "fixed-id",
        clock=lambda: datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )
    entry = asyncio.run(repo.add_entry(_input()))

    assert entry.id == "fixed-id"
    assert entry.timestamp == "2024-01-02T03:04:05.000Z"
    assert entry.analysis_type is AnalysisMode.DETECTION


def test_history_evicts_oldest_beyond_max_entries(storage) -> None:
    repo = HistoryRepository(storage, id_factory=_counter_ids())

    async def add_eleven():
        for _ in range(11):
            await repo.add_entry(_input())

    asyncio.run(add_eleven())
    ids = [e.id for e in repo.get_entries()]

    assert len(ids) == 10
    assert ids[0] == "id-11"
    assert "id-1" not in ids


def test_concurrent_adds_are_all_kept(storage) -> None:
    repo = HistoryRepository(storage, id_factory=_counter_ids())

    async def add_three():
        return await asyncio.gather(*(repo.add_entry(_input()) for _ in range(3)))

    saved = asyncio.run(add_three())

    assert all(e is not None for e in saved)
    assert sorted(e.id for e in repo.get_entries()) == ["id-1", "id-2", "id-3"]


def test_add_entry_nowait_returns_task(storage) -> None:
    repo = HistoryRepository(storage)

    async def scenario():
        task = repo.add_entry_nowait(_input())
        assert isinstance(task, asyncio.Task)
        return await task

    entry = asyncio.run(scenario())
    assert repo.get_entries()[0].id == entry.id


def test_compression_timeout_keeps_original_image(storage, log_messages) -> None:
    def slow_compressor(data_url, max_width, quality):
        time.sleep(0.5)
        raise AssertionError("should have timed out")

    repo = HistoryRepository(storage, compression_timeout=0.05, compressor=slow_compressor)
    entry_input = _input(width=40, height=30)

    entry = asyncio.run(repo.add_entry(entry_input))

    assert entry.image_data_url == entry_input.image_data_url
    assert entry.image_dimensions == ImageDimensions(40, 30)
    assert entry.results == entry_input.results
    assert any("timed out" in message for _, message in log_messages)


def test_undecodable_image_is_stored_as_is(storage) -> None:
    repo = HistoryRepository(storage)
    entry_input = _input(data_url="data:image/png;base64,bm90IGFuIGltYWdl")

    entry = asyncio.run(repo.add_entry(entry_input))

    assert entry.image_data_url == entry_input.image_data_url
    assert entry.results == entry_input.results


def test_quota_failure_keeps_newest_half() -> None:
    storage = EntryLimitStorage(HISTORY_STORAGE_KEY, limit=10)
    repo = HistoryRepository(storage, id_factory=_counter_ids())

    async def scenario():
        for _ in range(6):
            await repo.add_entry(_input())
        storage.limit = 4
        return await repo.add_entry(_input())

    entry = asyncio.run(scenario())

    assert entry is not None
    assert [e.id for e in repo.get_entries()] == ["id-7", "id-6", "id-5"]


def test_second_quota_failure_clears_history() -> None:
    storage = EntryLimitStorage(HISTORY_STORAGE_KEY, limit=10)
    repo = HistoryRepository(storage)

    async def scenario():
        await repo.add_entry(_input())
        storage.limit = 0
        return await repo.add_entry(_input())

    assert asyncio.run(scenario()) is None
    assert storage.get(HISTORY_STORAGE_KEY) is None
    assert repo.get_entries() == []


def test_delete_and_clear(storage) -> None:
    repo = HistoryRepository(storage, id_factory=_counter_ids())

    async def add_two():
        await repo.add_entry(_input())
        await repo.add_entry(_input())

    asyncio.run(add_two())

    assert repo.delete_entry("id-1") is True
    assert repo.delete_entry("id-1") is False
    assert [e.id for e in repo.get_entries()] == ["id-2"]

    repo.clear_history()
    assert repo.get_entries() == []


def test_storage_usage_reports_blob_size(storage) -> None:
    repo = HistoryRepository(storage)
    assert repo.get_storage_usage().used_bytes == 0

    asyncio.run(repo.add_entry(_input()))
    usage = repo.get_storage_usage()

    assert usage.used_bytes == len(storage.get(HISTORY_STORAGE_KEY).encode("utf-8"))
    assert usage.available_bytes == STORAGE_QUOTA_BYTES


def test_rescale_detection_clips_to_stored_image() -> None:
    scaled = rescale_result(make_detection(bbox=(1900, 1400, 200, 200)), 0.2,
                            bounds=ImageDimensions(400, 300))
    assert scaled.objects[0].bbox == (380, 280, 20, 20)


def test_rescale_ocr_clips_to_scaled_image() -> None:
    result = replace(make_ocr(width=1000, height=500), text_regions=[
        TextRegion(text="edge", confidence=90, bbox=BoundingBox(950, 480, 100, 40)),
    ])
    scaled = rescale_result(result, 0.4)
    assert scaled.text_regions[0].bbox == BoundingBox(380, 192, 20, 8)


def test_mismatched_result_variant_is_not_saved(storage, log_messages) -> None:
    repo = HistoryRepository(storage)
    entry_input = _input(mode=AnalysisMode.OCR, result=make_detection())

    assert asyncio.run(repo.add_entry(entry_input)) is None
    assert storage.get(HISTORY_STORAGE_KEY) is None
    assert any(level == "ERROR" for level, _ in log_messages)


def test_add_entry_never_raises_on_malformed_input(storage) -> None:
    repo = HistoryRepository(storage)
    raw_results = HistoryEntryInput(
        analysis_type=AnalysisMode.DETECTION,
        image_data_url=make_data_url(2000, 1500),
        results={"objects": [{"bbox": [100, 100, 50, 50], "class": "dog", "score": 0.9}]},
        image_dimensions=ImageDimensions(2000, 1500),
    )
    unknown_tag = replace(_input(), analysis_type="segmentation")

    assert asyncio.run(repo.add_entry(raw_results)) is None
    assert asyncio.run(repo.add_entry(unknown_tag)) is None
    assert repo.get_entries() == []
