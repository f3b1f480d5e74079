"""Scene boundary detection adapter."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

import cv2
from scenedetect import ContentDetector, detect

from video_story.contracts import Scene, round_ms
from video_story.storage import SCENES_MANIFEST, write_json

logger = logging.getLogger(__name__)

SceneDetector = Callable[[str, float], list[tuple[Any, Any]]]


class SegmentationFailure(RuntimeError):
    """Raised when boundary detection fails or returns unusable output."""


def _run_content_detector(video_path: str, threshold: float) -> list[tuple[Any, Any]]:
    return detect(video_path, ContentDetector(threshold=threshold))


def _timecode_seconds(value: Any) -> float:
    if hasattr(value, "get_seconds"):
        return float(value.get_seconds())
    return float(value)


def probe_duration(video_path: str) -> float:
    """Return the video duration in seconds, or 0.0 when it cannot be read."""
    cap = cv2.VideoCapture(video_path)
    try:
        if not cap.isOpened():
            return 0.0
        fps = cap.get(cv2.CAP_PROP_FPS) or 0.0
        frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0
    finally:
        cap.release()
    if fps <= 0 or frame_count <= 0:
        return 0.0
    return round_ms(frame_count / fps)


def detect_scenes(
    video_path: str,
    threshold: float,
    *,
    detector: SceneDetector | None = None,
) -> list[Scene]:
    """Detect scene boundaries and return an ordered, 1-indexed scene list.

    A detector that reports no boundaries yields exactly one scene spanning the
    whole video. When the duration cannot be probed the scene is the
    ``(0.0, 0.0)`` whole-video sentinel.
    """
    run = detector or _run_content_detector
    try:
        raw_scenes = run(video_path, threshold)
    except Exception as exc:
        raise SegmentationFailure(f"Scene detection failed for {video_path}: {exc}") from exc

    scenes: list[Scene] = []
    try:
        for index, (start_tc, end_tc) in enumerate(raw_scenes, start=1):
            scenes.append(
                Scene(
                    scene_number=index,
                    start_time=round_ms(_timecode_seconds(start_tc)),
                    end_time=round_ms(_timecode_seconds(end_tc)),
                )
            )
    except (TypeError, ValueError) as exc:
        raise SegmentationFailure(f"Unparsable scene detection output: {exc}") from exc

    for previous, current in zip(scenes, scenes[1:]):
        if current.start_time < previous.start_time:
            raise SegmentationFailure(
                f"Scene {current.scene_number} starts before scene {previous.scene_number}"
            )

    if not scenes:
        duration = probe_duration(video_path)
        logger.info(
            "scene.detect.no_boundaries video=%s fallback_duration=%s", video_path, duration
        )
        return [Scene(scene_number=1, start_time=0.0, end_time=duration)]
    return scenes


def segment_video(
    job_dir: Path,
    video_path: str,
    threshold: float,
    *,
    detector: SceneDetector | None = None,
) -> list[Scene]:
    """Detect scenes for a job and persist the scenes manifest."""
    logger.info("scene.detect.start video=%s threshold=%s", video_path, threshold)
    scenes = detect_scenes(video_path, threshold, detector=detector)
    manifest_path = write_json(job_dir / SCENES_MANIFEST, [scene.to_payload() for scene in scenes])
    logger.info("scene.detect.done scene_count=%s manifest=%s", len(scenes), manifest_path)
    return scenes
