# =============================================================================
# analysis_state.py
# Observable orchestration state: active mode, per-mode processing status and
# results, the current media handle, and video stream metadata. All mutation
# goes through the named transitions below.
# =============================================================================

from typing import Callable, List, Optional

from loguru import logger

from models import (ALL_MODES, IDLE_STATE, AnalysisMode, AnalysisResult, AnalysisState,
                    ProcessingState, ProcessingStatus, VideoStream, result_mode)


class AnalysisStateStore:
    """
    One instance per application, passed to whoever needs it. Subscribers
    receive a detached snapshot after every transition.
    """

    def __init__(self):
        self._state = AnalysisState()
        self._subscribers: List[Callable[[AnalysisState], None]] = []

    # -- Observation ----------------------------------------------------------

    def subscribe(self, callback: Callable[[AnalysisState], None]) -> Callable[[], None]:
        """Register a listener; it is called immediately with the current state."""
        self._subscribers.append(callback)
        callback(self.snapshot())

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def _notify(self):
        snap = self.snapshot()
        for cb in list(self._subscribers):
            cb(snap)

    def snapshot(self) -> AnalysisState:
        return self._state.copy()

    # -- Derived views --------------------------------------------------------

    @property
    def active_mode(self) -> AnalysisMode:
        return self._state.active_mode

    @property
    def current_processing(self) -> ProcessingState:
        return self._state.processing[self._state.active_mode]

    @property
    def is_any_processing(self) -> bool:
        return any(s.status == ProcessingStatus.PROCESSING
                   for s in self._state.processing.values())

    @property
    def has_any_results(self) -> bool:
        return any(r is not None for r in self._state.results.values())

    @property
    def media(self):
        return self._state.media

    @property
    def video_stream(self) -> Optional[VideoStream]:
        return self._state.video_stream

    def result_for(self, mode: AnalysisMode) -> Optional[AnalysisResult]:
        return self._state.results[AnalysisMode(mode)]

    def status_for(self, mode: AnalysisMode) -> ProcessingState:
        return self._state.processing[AnalysisMode(mode)]

    def is_processing(self, mode: AnalysisMode) -> bool:
        return self.status_for(mode).status == ProcessingStatus.PROCESSING

    # -- Transitions ----------------------------------------------------------

    def set_active_mode(self, mode: AnalysisMode):
        self._state.active_mode = AnalysisMode(mode)
        self._notify()

    def set_processing_status(self, mode: AnalysisMode, state: ProcessingState):
        """
        Replace a mode's processing state. COMPLETE is only reachable through
        set_result(); asking for it here without a stored result is an error.
        """
        mode = AnalysisMode(mode)
        if state.status == ProcessingStatus.COMPLETE and self._state.results[mode] is None:
            raise ValueError(f"Cannot mark {mode.value} complete without a result")
        self._state.processing[mode] = state
        self._notify()

    def set_result(self, mode: AnalysisMode, result: AnalysisResult):
        """Store a result and mark its mode complete in one transition."""
        mode = AnalysisMode(mode)
        if result_mode(result) is not mode:
            raise TypeError(
                f"{type(result).__name__} is not a {mode.value} result")
        self._state.results[mode]    = result
        self._state.processing[mode] = ProcessingState(status=ProcessingStatus.COMPLETE)
        self._notify()

    def clear_result(self, mode: AnalysisMode):
        mode = AnalysisMode(mode)
        self._state.results[mode]    = None
        self._state.processing[mode] = IDLE_STATE
        self._notify()

    def clear_all_results(self):
        """Drop every result at once. Required whenever the media changes."""
        for mode in ALL_MODES:
            self._state.results[mode]    = None
            self._state.processing[mode] = IDLE_STATE
        self._notify()

    def set_media(self, media):
        # Callers pair this with clear_all_results().
        self._state.media = media
        self._notify()

    # -- Video stream ---------------------------------------------------------

    def _cancel_loop(self):
        stream = self._state.video_stream
        if stream is not None and stream.loop_handle is not None:
            try:
                stream.loop_handle()
            except Exception as e:
                logger.error(f"Failed to stop video loop: {e}")
            stream.loop_handle = None

    def start_video_stream(self, fps: float):
        self._cancel_loop()
        self._state.video_stream = VideoStream(is_active=True, fps=fps, loop_handle=None)
        self._notify()

    def set_video_loop_handle(self, handle: Callable[[], None]):
        if self._state.video_stream is None:
            logger.warning("No active video stream, loop handle ignored")
            return
        self._state.video_stream.loop_handle = handle
        self._notify()

    def stop_video_stream(self):
        self._cancel_loop()
        self._state.video_stream = None
        self._notify()

    def reset_all(self):
        self._cancel_loop()
        self._state = AnalysisState()
        self._notify()
