# =============================================================================
# stores.py
# Observable wrappers over the repositories.
#
# SettingsStore keeps the current settings in memory and writes them back
# through a debounce (last write wins). HistoryStore mirrors the persisted
# history list and reloads it after every successful write.
# =============================================================================

import threading
from dataclasses import replace
from typing import Callable, List, Optional

from loguru import logger

from constants import SETTINGS_DEBOUNCE_MS
from history import HistoryRepository
from models import (AppSettings, DetectionSettings, HistoryEntry, HistoryEntryInput,
                    HistoryState, OCRSettings, PerformanceSettings, DEFAULT_SETTINGS)
from settings import SettingsRepository, clamp_setting, validate_language, validate_settings


class _Observable:
    """Minimal subscribe/notify. Listeners get the current value on subscribe."""

    def __init__(self):
        self._subscribers: List[Callable] = []

    def _current(self):
        raise NotImplementedError

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        self._subscribers.append(callback)
        callback(self._current())

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self):
        value = self._current()
        for cb in list(self._subscribers):
            cb(value)


# =============================================================================
# SETTINGS STORE
# =============================================================================

DEBOUNCE_IDLE    = "idle"
DEBOUNCE_PENDING = "pending"


class SettingsStore(_Observable):
    """
    In-memory settings with debounced persistence.

    Every change resets a single timer; when it fires, the latest value is
    saved. save_now() flushes immediately, reset() and cleanup() drop a
    pending save without writing it.
    """

    def __init__(self, repository: SettingsRepository,
                 debounce_ms: int = SETTINGS_DEBOUNCE_MS,
                 timer_factory: Callable = threading.Timer):
        super().__init__()
        self.repository    = repository
        self.debounce_ms   = debounce_ms
        self.timer_factory = timer_factory
        self._lock         = threading.RLock()
        self._value        = repository.load_settings()
        self._debounce     = DEBOUNCE_IDLE
        self._timer        = None
        self._generation   = 0

    def _current(self) -> AppSettings:
        return self._value

    @property
    def value(self) -> AppSettings:
        return self._value

    @property
    def debounce_state(self) -> str:
        return self._debounce

    # -- Debounce -------------------------------------------------------------

    def _cancel_pending(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer      = None
            self._debounce   = DEBOUNCE_IDLE
            self._generation += 1

    def _schedule_save(self):
        with self._lock:
            self._cancel_pending()
            generation = self._generation
            timer = self.timer_factory(self.debounce_ms / 1000.0,
                                       lambda: self._on_timer(generation))
            timer.daemon   = True
            self._timer    = timer
            self._debounce = DEBOUNCE_PENDING
            timer.start()

    def _on_timer(self, generation: int):
        # saves under the lock; reset() waits for an in-flight save
        with self._lock:
            if generation != self._generation or self._debounce != DEBOUNCE_PENDING:
                return
            self._timer    = None
            self._debounce = DEBOUNCE_IDLE
            logger.debug("Saving settings after debounce")
            self.repository.save_settings(self._value)

    # -- Writes ---------------------------------------------------------------

    def set(self, settings: AppSettings):
        with self._lock:
            self._value = validate_settings(settings)
        self._notify()
        self._schedule_save()

    def update(self, fn: Callable[[AppSettings], AppSettings]):
        self.set(fn(self._value))

    def save_now(self) -> bool:
        with self._lock:
            self._cancel_pending()
            return self.repository.save_settings(self._value)

    def reset(self):
        with self._lock:
            self._cancel_pending()
            self.repository.reset_to_defaults()
            self._value = DEFAULT_SETTINGS
        self._notify()

    def cleanup(self):
        self._cancel_pending()

    # -- Section updaters -----------------------------------------------------

    def update_detection_settings(self, **updates):
        if "confidence_threshold" in updates:
            updates["confidence_threshold"] = clamp_setting(
                updates["confidence_threshold"], "confidenceThreshold")
        if "max_detections" in updates:
            updates["max_detections"] = clamp_setting(updates["max_detections"], "maxDetections")
        self.update(lambda s: replace(s, detection=replace(s.detection, **updates)))

    def update_ocr_settings(self, **updates):
        if "min_confidence" in updates:
            updates["min_confidence"] = clamp_setting(updates["min_confidence"], "minConfidence")
        if "language" in updates:
            updates["language"] = validate_language(updates["language"])
        self.update(lambda s: replace(s, ocr=replace(s.ocr, **updates)))

    def update_ocr_language(self, language: str):
        self.update_ocr_settings(language=language)

    def update_performance_settings(self, **updates):
        if "video_fps" in updates:
            updates["video_fps"] = clamp_setting(updates["video_fps"], "videoFPS")
        self.update(lambda s: replace(s, performance=replace(s.performance, **updates)))

    def update_video_fps(self, fps: float):
        self.update_performance_settings(video_fps=fps)

    # -- Derived --------------------------------------------------------------

    @property
    def detection(self) -> DetectionSettings:
        return self._value.detection

    @property
    def ocr(self) -> OCRSettings:
        return self._value.ocr

    @property
    def performance(self) -> PerformanceSettings:
        return self._value.performance

    @property
    def video_fps(self) -> float:
        return self._value.performance.video_fps

    @property
    def confidence_threshold(self) -> float:
        return self._value.detection.confidence_threshold


# =============================================================================
# HISTORY STORE
# =============================================================================

class HistoryStore(_Observable):
    """Mirror of the persisted history with a UI selection."""

    def __init__(self, repository: HistoryRepository):
        super().__init__()
        self.repository = repository
        self._state     = HistoryState(entries=repository.get_entries())

    def _current(self) -> HistoryState:
        return self._state

    def _set_state(self, state: HistoryState):
        self._state = state
        self._notify()

    # -- Derived --------------------------------------------------------------

    @property
    def state(self) -> HistoryState:
        return self._state

    def snapshot(self) -> HistoryState:
        return self._state

    @property
    def entries(self) -> List[HistoryEntry]:
        return self._state.entries

    @property
    def selected_entry(self) -> Optional[HistoryEntry]:
        if self._state.selected_entry_id is None:
            return None
        return self.get_entry_by_id(self._state.selected_entry_id)

    @property
    def has_history(self) -> bool:
        return len(self._state.entries) > 0

    @property
    def count(self) -> int:
        return len(self._state.entries)

    @property
    def has_selected_entry(self) -> bool:
        return self._state.selected_entry_id is not None

    def get_entry_by_id(self, entry_id: str) -> Optional[HistoryEntry]:
        for e in self._state.entries:
            if e.id == entry_id:
                return e
        return None

    # -- Operations -----------------------------------------------------------

    def reload(self):
        entries  = self.repository.get_entries()
        selected = self._state.selected_entry_id
        if selected is not None and all(e.id != selected for e in entries):
            selected = None
        self._set_state(HistoryState(entries=entries, selected_entry_id=selected))

    async def add_to_history(self, entry: HistoryEntryInput) -> Optional[HistoryEntry]:
        try:
            saved = await self.repository.add_entry(entry)
        except Exception as e:
            logger.error(f"Failed to add to history: {e}")
            return None
        if saved is not None:
            self.reload()
        return saved

    def select_entry(self, entry_id: str):
        self._set_state(replace(self._state, selected_entry_id=entry_id))

    def clear_selection(self):
        self._set_state(replace(self._state, selected_entry_id=None))

    def delete_history_entry(self, entry_id: str) -> bool:
        if not self.repository.delete_entry(entry_id):
            return False
        selected = self._state.selected_entry_id
        self._set_state(HistoryState(
            entries=[e for e in self._state.entries if e.id != entry_id],
            selected_entry_id=None if selected == entry_id else selected,
        ))
        return True

    def clear_all_history(self):
        self.repository.clear_history()
        self._set_state(HistoryState())
