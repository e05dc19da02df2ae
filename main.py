# =============================================================================
# main.py
# Command-line entry point for Media Analyzer.
#
# Usage:
#   python main.py image photo.jpg --mode detection --model small --save
#   python main.py camera --device 0 --mode ocr --seconds 10
#   python main.py history list | clear | usage
#   python main.py settings show | set detection.confidenceThreshold 70 | reset
# =============================================================================

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from ai import create_engine
from analysis_state import AnalysisStateStore
from constants import DEFAULT_MODEL_SIZE, DEFAULT_STORAGE_DIR, MODEL_SIZES
from errors import error_message
from history import HistoryRepository
from log import setup_logging
from media import CameraStream, StillImage, history_input_from_media
from models import (AnalysisMode, AnalysisResult, AppSettings, ClassificationAnalysis,
                    DetectionResult, OCRAnalysis, ProcessingState, ProcessingStatus)
from settings import SettingsRepository, fps_quality_tier, validate_settings
from storage import FileStorage
from stores import HistoryStore, SettingsStore
from video_loop import VideoAnalysisSession

_MODES = tuple(m.value for m in AnalysisMode)


# =============================================================================
# FORMATTING
# =============================================================================

def format_result(result: AnalysisResult) -> str:
    """One human-readable block per result."""
    if isinstance(result, DetectionResult):
        lines = [f"{len(result.objects)} object(s) in {result.inference_time:.0f} ms"]
        for o in result.objects:
            x, y, w, h = o.bbox
            lines.append(f"  {o.class_name:<16} {o.score * 100:5.1f}%  "
                         f"[{x:.0f}, {y:.0f}, {w:.0f}, {h:.0f}]")
        return "\n".join(lines)

    if isinstance(result, ClassificationAnalysis):
        lines = [f"Top {len(result.predictions)} prediction(s) in {result.inference_time:.0f} ms"]
        for p in result.predictions:
            lines.append(f"  {p.label:<24} {p.confidence * 100:5.1f}%")
        return "\n".join(lines)

    if isinstance(result, OCRAnalysis):
        header = (f"{len(result.text_regions)} word(s) [{result.language}] "
                  f"in {result.processing_time:.0f} ms")
        return f"{header}\n{result.full_text}" if result.full_text else header

    raise TypeError(f"Not an analysis result: {type(result).__name__}")


# =============================================================================
# SETTINGS HELPERS
# =============================================================================

def parse_setting_value(raw: str):
    """JSON scalars ("70", "true") become numbers/bools; anything else stays a string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def apply_setting(settings: AppSettings, key: str, raw: str) -> AppSettings:
    """Set a dotted camelCase key (e.g. "ocr.minConfidence") and re-validate."""
    data  = settings.to_dict()
    parts = key.split(".")
    if len(parts) != 2 or parts[0] not in data or not isinstance(data[parts[0]], dict) \
            or parts[1] not in data[parts[0]]:
        raise ValueError(f"Unknown setting: {key}")
    data[parts[0]][parts[1]] = parse_setting_value(raw)
    return validate_settings(data)


# =============================================================================
# COMMANDS
# =============================================================================

async def _analyze_image(path: Path, mode: AnalysisMode, settings: AppSettings,
                         history: Optional[HistoryStore],
                         model_size: str = DEFAULT_MODEL_SIZE) -> int:
    state  = AnalysisStateStore()
    engine = create_engine(mode, settings, model_size)
    try:
        image = StillImage.from_path(path)
    except OSError as e:
        logger.error(f"Cannot open {path}: {e}")
        print(f"Cannot open image: {path}", file=sys.stderr)
        return 1

    state.set_media(image)
    state.clear_all_results()
    state.set_active_mode(mode)

    try:
        state.set_processing_status(mode, ProcessingState(status=ProcessingStatus.LOADING,
                                                          message="Loading model..."))
        await engine.initialize()
        state.set_processing_status(mode, ProcessingState(status=ProcessingStatus.PROCESSING))
        result = await engine.infer(image.frame())
        state.set_result(mode, result)
    except Exception as e:
        logger.exception(f"{mode.value} analysis of {path} failed")
        state.set_processing_status(mode, ProcessingState(status=ProcessingStatus.ERROR,
                                                          message=error_message(e)))
        print(error_message(e), file=sys.stderr)
        return 1
    finally:
        engine.dispose()

    print(f"{image.name} ({image.width}x{image.height})")
    print(format_result(result))

    if history is not None:
        saved = await history.add_to_history(history_input_from_media(image, mode, result))
        if saved is None:
            print("Could not save to history.", file=sys.stderr)
            return 1
        print(f"Saved to history as {saved.id}")
    return 0


async def _analyze_camera(device: int, mode: AnalysisMode, seconds: float,
                          settings: AppSettings,
                          model_size: str = DEFAULT_MODEL_SIZE) -> int:
    state  = AnalysisStateStore()
    engine = create_engine(mode, settings, model_size)
    fps    = settings.performance.video_fps

    def on_result(result):
        state.set_result(mode, result)
        print(format_result(result))
        print("-" * 40)

    try:
        await engine.initialize()
        with CameraStream(device) as camera:
            state.set_media(camera)
            state.clear_all_results()
            state.set_active_mode(mode)
            logger.info(f"Analysing camera {device} at {fps} fps ({fps_quality_tier(fps)})")
            with VideoAnalysisSession(engine, camera, state, mode, fps, on_result=on_result):
                await asyncio.sleep(seconds)
            # let an in-flight inference deliver before the camera closes
            while state.is_processing(mode):
                await asyncio.sleep(0.05)
    except Exception as e:
        logger.exception("Camera analysis failed")
        print(error_message(e), file=sys.stderr)
        return 1
    finally:
        engine.dispose()
    return 0


def _history_command(action: str, repository: HistoryRepository) -> int:
    store = HistoryStore(repository)
    if action == "list":
        if not store.has_history:
            print("History is empty.")
            return 0
        for e in store.entries:
            print(f"{e.id}  {e.timestamp}  {e.analysis_type.value:<14} "
                  f"{e.image_dimensions.width}x{e.image_dimensions.height}")
        return 0
    if action == "clear":
        store.clear_all_history()
        print("History cleared.")
        return 0
    usage = repository.get_storage_usage()
    if usage is None:
        print("Storage is not available.", file=sys.stderr)
        return 1
    print(f"{usage.used_bytes} bytes used of ~{usage.available_bytes} bytes "
          f"({store.count} entries)")
    return 0


def _settings_command(args, store: SettingsStore) -> int:
    if args.action == "show":
        print(json.dumps(store.value.to_dict(), indent=2))
        return 0
    if args.action == "reset":
        store.reset()
        print("Settings reset to defaults.")
        return 0
    if args.key is None or args.value is None:
        print("settings set requires KEY and VALUE", file=sys.stderr)
        return 2
    try:
        updated = apply_setting(store.value, args.key, args.value)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2
    store.set(updated)
    if not store.save_now():
        print("Could not save settings.", file=sys.stderr)
        return 1
    print(json.dumps(store.value.to_dict(), indent=2))
    return 0


# =============================================================================
# PARSER
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Media Analyzer: object detection, classification and OCR",
    )
    parser.add_argument("--storage-dir", type=Path, default=DEFAULT_STORAGE_DIR,
                        help="Directory for settings and history (default: ~/.media_analyzer)")
    parser.add_argument("--log-level", default="WARNING",
                        help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-file", type=Path, default=None,
                        help="Also write a debug log to this file")
    sub = parser.add_subparsers(dest="command", required=True)

    p_image = sub.add_parser("image", help="Analyse a still image")
    p_image.add_argument("path", type=Path)
    p_image.add_argument("--mode", choices=_MODES, default=AnalysisMode.DETECTION.value)
    p_image.add_argument("--model", choices=MODEL_SIZES, default=DEFAULT_MODEL_SIZE,
                         help="YOLO model size (ignored for ocr)")
    p_image.add_argument("--save", action="store_true", help="Save the result to history")

    p_cam = sub.add_parser("camera", help="Analyse a live camera stream")
    p_cam.add_argument("--device", type=int, default=0)
    p_cam.add_argument("--mode", choices=_MODES, default=AnalysisMode.DETECTION.value)
    p_cam.add_argument("--seconds", type=float, default=10.0)
    p_cam.add_argument("--model", choices=MODEL_SIZES, default=DEFAULT_MODEL_SIZE,
                       help="YOLO model size (ignored for ocr)")

    p_hist = sub.add_parser("history", help="Inspect or clear saved analyses")
    p_hist.add_argument("action", choices=("list", "clear", "usage"))

    p_set = sub.add_parser("settings", help="Show or change settings")
    p_set.add_argument("action", choices=("show", "set", "reset"))
    p_set.add_argument("key", nargs="?")
    p_set.add_argument("value", nargs="?")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    storage        = FileStorage(args.storage_dir)
    settings_store = SettingsStore(SettingsRepository(storage))
    history_repo   = HistoryRepository(storage)

    try:
        if args.command == "image":
            history = HistoryStore(history_repo) if args.save else None
            return asyncio.run(_analyze_image(args.path, AnalysisMode(args.mode),
                                              settings_store.value, history,
                                              args.model))
        if args.command == "camera":
            return asyncio.run(_analyze_camera(args.device, AnalysisMode(args.mode),
                                               args.seconds, settings_store.value,
                                               args.model))
        if args.command == "history":
            return _history_command(args.action, history_repo)
        return _settings_command(args, settings_store)
    finally:
        settings_store.cleanup()


if __name__ == "__main__":
    sys.exit(main())
