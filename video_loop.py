# =============================================================================
# video_loop.py
# Throttled, non-overlapping inference loop for live media.
#
# A frame clock ticks at display rate (60 Hz by default). Each tick that is at
# least 1000/fps ms after the last accepted tick is accepted; an accepted tick
# starts inference only if the mode is not already processing. The next tick
# is always requested, so a slow engine never stalls the clock.
# =============================================================================

import asyncio
from typing import Any, Callable, Optional, Protocol, Set

from loguru import logger

from analysis_state import AnalysisStateStore
from constants import FRAME_CLOCK_HZ
from errors import error_message
from models import AnalysisMode, ProcessingState, ProcessingStatus


# =============================================================================
# FRAME CLOCKS
# =============================================================================

class FrameClock(Protocol):
    def request_frame(self, callback: Callable[[float], None]) -> Any: ...
    def cancel_frame(self, handle: Any) -> None: ...


class EventLoopFrameClock:
    """Fires callbacks on the asyncio loop every 1/hz seconds with a ms timestamp."""

    def __init__(self, hz: float = FRAME_CLOCK_HZ,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.period = 1.0 / hz
        self._loop  = loop

    def request_frame(self, callback: Callable[[float], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(self.period, lambda: callback(loop.time() * 1000.0))

    def cancel_frame(self, handle: asyncio.TimerHandle):
        handle.cancel()


# =============================================================================
# LOOP
# =============================================================================

def _grab_frame(source):
    return source.frame() if hasattr(source, "frame") else source


def start_video_loop(engine, source, state: AnalysisStateStore, mode: AnalysisMode,
                     fps: float,
                     on_result: Optional[Callable[[Any], None]] = None,
                     clock: Optional[FrameClock] = None) -> Callable[[], None]:
    """
    Start analysing `source` with `engine` at up to `fps` inferences per second.
    Must be called from a running event loop. Returns stop(); stopping prevents
    new inferences but lets an in-flight one finish and deliver its result.
    """
    mode     = AnalysisMode(mode)
    clock    = clock or EventLoopFrameClock()
    aio_loop = asyncio.get_running_loop()
    interval = 1000.0 / fps
    deliver  = on_result or (lambda result: state.set_result(mode, result))

    stopped     = False
    pending     = None
    last_accept = float("-inf")
    tasks: Set[asyncio.Task] = set()

    async def run_inference():
        try:
            result = await engine.infer(_grab_frame(source))
            deliver(result)
        except Exception as e:
            logger.error(f"{mode.value} video inference failed: {e}")
            state.set_processing_status(
                mode, ProcessingState(status=ProcessingStatus.ERROR, message=error_message(e)))
        finally:
            if state.is_processing(mode):
                state.set_processing_status(mode, ProcessingState())

    def tick(timestamp: float):
        nonlocal pending, last_accept
        if stopped:
            return

        if timestamp - last_accept >= interval:
            last_accept = timestamp
            if not state.is_processing(mode):
                state.set_processing_status(
                    mode, ProcessingState(status=ProcessingStatus.PROCESSING))
                task = aio_loop.create_task(run_inference())
                tasks.add(task)
                task.add_done_callback(tasks.discard)

        pending = clock.request_frame(tick)

    def stop():
        nonlocal stopped, pending
        stopped = True
        if pending is not None:
            clock.cancel_frame(pending)
            pending = None

    pending = clock.request_frame(tick)
    logger.debug(f"Video loop started for {mode.value} at {fps} fps")
    return stop


# =============================================================================
# SESSION
# =============================================================================

class VideoAnalysisSession:
    """Registers one video loop with the state store and tears it down on stop."""

    def __init__(self, engine, source, state: AnalysisStateStore, mode: AnalysisMode,
                 fps: float, on_result: Optional[Callable[[Any], None]] = None,
                 clock: Optional[FrameClock] = None):
        self.engine    = engine
        self.source    = source
        self.state     = state
        self.mode      = AnalysisMode(mode)
        self.fps       = fps
        self.on_result = on_result
        self.clock     = clock

    def start(self):
        self.state.start_video_stream(self.fps)
        handle = start_video_loop(self.engine, self.source, self.state, self.mode,
                                  self.fps, on_result=self.on_result, clock=self.clock)
        self.state.set_video_loop_handle(handle)

    def stop(self):
        self.state.stop_video_stream()

    def __enter__(self) -> "VideoAnalysisSession":
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
