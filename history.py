# =============================================================================
# history.py
# History validation (type guards over decoded JSON) and the HistoryRepository:
# bounded, newest-first list of past analyses persisted as one JSON blob.
# =============================================================================

import asyncio
import json
import random
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Callable, List, Mapping, Optional

from loguru import logger

from constants import (HISTORY_STORAGE_KEY, HISTORY_MAX_ENTRIES, HISTORY_THUMBNAIL_MAX_WIDTH,
                       HISTORY_THUMBNAIL_QUALITY, HISTORY_COMPRESSION_TIMEOUT,
                       STORAGE_QUOTA_BYTES)
from media import clamp_bbox, compress_image_data_url, scale_bbox
from models import (AnalysisMode, AnalysisResult, BoundingBox, ClassificationAnalysis,
                    DetectionResult, HistoryEntry, HistoryEntryInput, ImageDimensions,
                    OCRAnalysis, StorageUsage, result_mode)
from storage import QuotaExceededError, probe_storage


# =============================================================================
# VALIDATION
# =============================================================================

_TAGS = {m.value for m in AnalysisMode}


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def is_detection_result(results: Any) -> bool:
    if not isinstance(results, Mapping) or not isinstance(results.get("objects"), list):
        return False
    for obj in results["objects"]:
        if not isinstance(obj, Mapping):
            return False
        if "class" not in obj or "score" not in obj:
            return False
        bbox = obj.get("bbox")
        if not isinstance(bbox, list) or len(bbox) != 4:
            return False
    return True


def is_classification_result(results: Any) -> bool:
    if not isinstance(results, Mapping) or not isinstance(results.get("predictions"), list):
        return False
    return all(isinstance(p, Mapping) and "label" in p and "confidence" in p
               for p in results["predictions"])


def is_ocr_result(results: Any) -> bool:
    return (isinstance(results, Mapping)
            and isinstance(results.get("fullText"), str)
            and "textRegions" in results)


_RESULT_GUARDS = {
    AnalysisMode.DETECTION.value:      is_detection_result,
    AnalysisMode.CLASSIFICATION.value: is_classification_result,
    AnalysisMode.OCR.value:            is_ocr_result,
}


def is_valid_entry(candidate: Any) -> bool:
    """Cheap structural check of one decoded history entry. Never raises."""
    if not isinstance(candidate, Mapping):
        return False
    if not isinstance(candidate.get("id"), str):
        return False
    if not isinstance(candidate.get("timestamp"), str):
        return False
    tag = candidate.get("analysisType")
    if not isinstance(tag, str) or tag not in _TAGS:
        return False
    if not isinstance(candidate.get("imageDataURL"), str):
        return False
    results = candidate.get("results")
    if not isinstance(results, Mapping):
        return False
    dims = candidate.get("imageDimensions")
    if not isinstance(dims, Mapping):
        return False
    if not _is_number(dims.get("width")) or not _is_number(dims.get("height")):
        return False
    return _RESULT_GUARDS[tag](results)


def filter_valid(candidates: Any) -> List[dict]:
    """Keep only entries that pass is_valid_entry, in order. Non-lists give []."""
    if not isinstance(candidates, list):
        return []
    return [c for c in candidates if is_valid_entry(c)]


# =============================================================================
# GEOMETRY RESCALING
# =============================================================================

def _scale_dims(dims: ImageDimensions, scale: float) -> ImageDimensions:
    return ImageDimensions(width=round(dims.width * scale), height=round(dims.height * scale))


def _scale_detection_bbox(bbox, scale: float, bounds: Optional[ImageDimensions]):
    scaled = scale_bbox(BoundingBox(*bbox), scale)
    if bounds is not None:
        scaled = clamp_bbox(scaled, bounds.width, bounds.height)
    return (scaled.x, scaled.y, scaled.width, scaled.height)


def rescale_result(result: AnalysisResult, scale: float,
                   bounds: Optional[ImageDimensions] = None) -> AnalysisResult:
    """
    Map a result's geometry into an image resized by `scale`. Boxes are
    clipped to `bounds` (detection) or the scaled image size (OCR) so that
    rounding never leaves them outside the stored image.
    """
    if scale == 1:
        return result

    if isinstance(result, DetectionResult):
        objects = [replace(o, bbox=_scale_detection_bbox(o.bbox, scale, bounds))
                   for o in result.objects]
        return replace(result, objects=objects)

    if isinstance(result, OCRAnalysis):
        dims    = _scale_dims(result.image_dimensions, scale)
        regions = [replace(r, bbox=clamp_bbox(scale_bbox(r.bbox, scale), dims.width, dims.height))
                   if r.bbox else r
                   for r in result.text_regions]
        return replace(result, text_regions=regions, image_dimensions=dims)

    if isinstance(result, ClassificationAnalysis):
        return replace(result, image_dimensions=_scale_dims(result.image_dimensions, scale))

    raise TypeError(f"Not an analysis result: {type(result).__name__}")


# =============================================================================
# IDS AND TIMESTAMPS
# =============================================================================

def generate_id() -> str:
    """Random RFC 4122 version-4 id."""
    try:
        return str(uuid.uuid4())
    except NotImplementedError:
        # No OS randomness source; fall back to a PRNG with the same layout.
        bits = random.getrandbits(128)
        bits = (bits & ~(0xF << 76)) | (4 << 76)
        bits = (bits & ~(0x3 << 62)) | (0x2 << 62)
        return str(uuid.UUID(int=bits))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# REPOSITORY
# =============================================================================

class HistoryRepository:
    """
    Owner of the persisted history blob.

    Reads are synchronous. add_entry() is a coroutine: thumbnail compression
    runs in a worker thread under a timeout, and the reload-prepend-persist
    step is serialized with an asyncio.Lock so concurrent adds cannot drop
    each other's entry. Nothing here raises to the caller.
    """

    def __init__(self, storage,
                 max_entries: int = HISTORY_MAX_ENTRIES,
                 max_thumbnail_width: int = HISTORY_THUMBNAIL_MAX_WIDTH,
                 quality: int = HISTORY_THUMBNAIL_QUALITY,
                 compression_timeout: float = HISTORY_COMPRESSION_TIMEOUT,
                 id_factory: Optional[Callable[[], str]] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 compressor: Optional[Callable] = None,
                 key: str = HISTORY_STORAGE_KEY):
        self.storage             = storage
        self.key                 = key
        self.max_entries         = max_entries
        self.max_thumbnail_width = max_thumbnail_width
        self.quality             = quality
        self.compression_timeout = compression_timeout
        self.id_factory          = id_factory or generate_id
        self.clock               = clock or _utc_now
        self.compressor          = compressor or compress_image_data_url
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop = None

    # -- Availability ---------------------------------------------------------

    def is_available(self) -> bool:
        return probe_storage(self.storage)

    # -- Reads ----------------------------------------------------------------

    def get_entries(self) -> List[HistoryEntry]:
        """Valid entries, newest first. [] on any failure."""
        if not self.is_available():
            return []

        try:
            stored = self.storage.get(self.key)
        except Exception as e:
            logger.error(f"Failed to read history: {e}")
            return []
        if not stored:
            return []

        try:
            parsed = json.loads(stored)
        except ValueError as e:
            logger.error(f"Failed to parse history: {e}")
            return []

        if not isinstance(parsed, list):
            logger.warning("Stored history is not a list, ignoring it")
            return []

        valid   = filter_valid(parsed)
        dropped = len(parsed) - len(valid)
        if dropped:
            logger.warning(f"Dropped {dropped} invalid history entr{'y' if dropped == 1 else 'ies'}")

        entries: List[HistoryEntry] = []
        for raw in valid:
            try:
                entries.append(HistoryEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping undecodable history entry {raw.get('id')}: {e}")
        return entries

    def get_storage_usage(self) -> Optional[StorageUsage]:
        if not self.is_available():
            return None
        try:
            blob = self.storage.get(self.key) or ""
        except Exception as e:
            logger.error(f"Failed to read history size: {e}")
            return None
        return StorageUsage(used_bytes=len(blob.encode("utf-8")),
                            available_bytes=STORAGE_QUOTA_BYTES)

    # -- Writes ---------------------------------------------------------------

    def _write(self, entries: List[HistoryEntry]):
        self.storage.set(self.key, json.dumps([e.to_dict() for e in entries]))

    def _save_entries(self, entries: List[HistoryEntry]) -> bool:
        try:
            self._write(entries)
            return True
        except QuotaExceededError:
            keep = entries[:len(entries) // 2]
            logger.warning(f"History quota exceeded, retrying with newest {len(keep)} "
                           f"of {len(entries)} entries")
        except Exception as e:
            logger.error(f"Failed to save history: {e}")
            return False

        try:
            self._write(keep)
            return True
        except Exception as e:
            logger.error(f"Failed to save history after trimming, clearing it: {e}")
            self.clear_history()
            return False

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock      = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def _compress(self, data_url: str):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.compressor, data_url,
                                  self.max_thumbnail_width, self.quality),
                timeout=self.compression_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Image compression timed out after {self.compression_timeout}s, "
                           f"storing original image")
        except Exception as e:
            logger.warning(f"Image compression failed, storing original image: {e}")
        return None

    async def add_entry(self, entry: HistoryEntryInput) -> Optional[HistoryEntry]:
        """
        Compress, rescale, prepend and persist one analysis.
        Returns the stored entry, or None if it could not be persisted.
        """
        if not self.is_available():
            logger.warning("History storage not available, entry not saved")
            return None

        try:
            return await self._add(entry)
        except Exception as e:
            logger.error(f"Failed to add history entry: {e}")
            return None

    async def _add(self, entry: HistoryEntryInput) -> Optional[HistoryEntry]:
        mode = AnalysisMode(entry.analysis_type)
        if result_mode(entry.results) is not mode:
            logger.error(f"History entry tagged {mode.value} carries a "
                         f"{type(entry.results).__name__}, not saved")
            return None

        compressed = await self._compress(entry.image_data_url)
        if compressed is not None:
            data_url, scale, dims = compressed
        else:
            data_url, scale, dims = entry.image_data_url, 1.0, entry.image_dimensions

        results = entry.results
        if scale != 1:
            results = rescale_result(results, scale, bounds=dims)

        new_entry = HistoryEntry(
            id=self.id_factory(),
            timestamp=_iso(self.clock()),
            analysis_type=mode,
            image_data_url=data_url,
            results=results,
            image_dimensions=dims,
        )

        async with self._get_lock():
            entries = [new_entry] + self.get_entries()
            entries = entries[:self.max_entries]
            if not self._save_entries(entries):
                return None

        logger.debug(f"Saved {new_entry.analysis_type.value} history entry {new_entry.id}")
        return new_entry

    def add_entry_nowait(self, entry: HistoryEntryInput) -> "asyncio.Task":
        """Schedule add_entry on the running loop without waiting for durability."""
        return asyncio.get_running_loop().create_task(self.add_entry(entry))

    def delete_entry(self, entry_id: str) -> bool:
        entries   = self.get_entries()
        remaining = [e for e in entries if e.id != entry_id]
        if len(remaining) == len(entries):
            return False
        return self._save_entries(remaining)

    def clear_history(self):
        try:
            self.storage.delete(self.key)
        except Exception as e:
            logger.error(f"Failed to clear history: {e}")
