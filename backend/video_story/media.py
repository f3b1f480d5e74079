"""Per-scene audio clip and keyframe extraction."""

from __future__ import annotations

import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import cv2

from video_story.contracts import (
    AudioSampler,
    AudioSegment,
    FrameSampler,
    Keyframe,
    Scene,
    SceneKeyframes,
    SceneMediaBundle,
    round_ms,
)
from video_story.storage import (
    AUDIO_MANIFEST,
    KEYFRAMES_MANIFEST,
    JobNotFoundError,
    build_scene_audio_path,
    build_scene_keyframe_dir,
    read_json,
    write_json,
)

logger = logging.getLogger(__name__)

AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
JPEG_QUALITY = 95


class ExtractionFailure(RuntimeError):
    """Raised when one audio clip or one frame cannot be extracted."""


class FfmpegAudioSampler:
    """Clip scene audio with ffmpeg as 16 kHz mono PCM WAV."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", timeout_seconds: int = 120) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.timeout_seconds = timeout_seconds

    def sample_audio(self, video_path: str, start: float, end: float, output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        command = [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-ss",
            f"{start}",
            "-t",
            f"{end - start}",
            "-i",
            video_path,
            "-vn",
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(AUDIO_SAMPLE_RATE),
            "-ac",
            str(AUDIO_CHANNELS),
            str(output_path),
        ]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ExtractionFailure(f"command not found: {self.ffmpeg_binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExtractionFailure(f"ffmpeg timed out after {self.timeout_seconds}s") from exc
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise ExtractionFailure(f"ffmpeg failed for {output_path.name}: {detail}")
        if not output_path.exists():
            raise ExtractionFailure(f"ffmpeg produced no output for {output_path.name}")
        return output_path


class OpenCVFrameSampler:
    """Grab single frames by seeking with OpenCV and write them as JPEG."""

    def sample_frame(self, video_path: str, timestamp: float, output_path: Path) -> Path:
        cap = cv2.VideoCapture(video_path)
        try:
            if not cap.isOpened():
                raise ExtractionFailure(f"Cannot open video {video_path}")
            cap.set(cv2.CAP_PROP_POS_MSEC, max(0.0, timestamp) * 1000.0)
            ok, image = cap.read()
        finally:
            cap.release()
        if not ok or image is None:
            raise ExtractionFailure(f"No frame decoded at {timestamp}s")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(output_path), image, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY]):
            raise ExtractionFailure(f"Failed to write frame {output_path.name}")
        return output_path


def _extract_scene_audio(
    video_path: str,
    scene: Scene,
    job_dir: Path,
    sampler: AudioSampler,
) -> AudioSegment | None:
    audio_path = build_scene_audio_path(job_dir, scene.scene_number)
    try:
        written = sampler.sample_audio(video_path, scene.start_time, scene.end_time, audio_path)
    except (ExtractionFailure, OSError) as exc:
        logger.warning(
            "media.audio.scene_failed scene=%s error=%s", scene.scene_number, exc
        )
        return None
    logger.info(
        "media.audio.scene_done scene=%s start=%s end=%s",
        scene.scene_number,
        scene.start_time,
        scene.end_time,
    )
    return AudioSegment(scene=scene, audio_path=str(written))


def split_audio_by_scenes(
    video_path: str,
    scenes: list[Scene],
    job_dir: Path,
    sampler: AudioSampler,
    *,
    max_workers: int = 1,
) -> list[AudioSegment]:
    """Clip one audio segment per scene and persist the audio manifest.

    Scenes with non-positive duration are skipped; a failed scene is omitted and
    the batch continues.
    """
    valid: list[Scene] = []
    for scene in scenes:
        if scene.end_time - scene.start_time <= 0:
            logger.info(
                "media.audio.scene_skipped scene=%s reason=non_positive_duration",
                scene.scene_number,
            )
            continue
        valid.append(scene)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        outcomes = list(
            pool.map(lambda item: _extract_scene_audio(video_path, item, job_dir, sampler), valid)
        )
    segments = sorted(
        (item for item in outcomes if item is not None),
        key=lambda item: item.scene.scene_number,
    )
    write_json(job_dir / AUDIO_MANIFEST, [item.to_payload() for item in segments])
    logger.info("media.audio.done segments=%s of scenes=%s", len(segments), len(scenes))
    return segments


def keyframe_timestamps(start: float, end: float, count: int) -> list[float]:
    """Interior, evenly spaced sample times: ``start + D/(K+1) * i`` for i in 1..K."""
    duration = end - start
    if duration <= 0:
        return [round_ms(start)]
    step = duration / (count + 1)
    return [round_ms(start + step * i) for i in range(1, count + 1)]


def _extract_scene_keyframes(
    video_path: str,
    scene: Scene,
    job_dir: Path,
    sampler: FrameSampler,
    count: int,
) -> SceneKeyframes:
    scene_dir = build_scene_keyframe_dir(job_dir, scene.scene_number)
    keyframes: list[Keyframe] = []
    try:
        scene_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("media.keyframe.scene_failed scene=%s error=%s", scene.scene_number, exc)
        return SceneKeyframes(scene=scene, keyframes=())
    for raw_index, timestamp in enumerate(keyframe_timestamps(scene.start_time, scene.end_time, count), start=1):
        frame_path = scene_dir / f"frame_{raw_index}.jpg"
        try:
            written = sampler.sample_frame(video_path, timestamp, frame_path)
        except (ExtractionFailure, OSError) as exc:
            logger.warning(
                "media.keyframe.failed scene=%s timestamp=%s error=%s",
                scene.scene_number,
                timestamp,
                exc,
            )
            continue
        keyframes.append(Keyframe(index=len(keyframes) + 1, timestamp=timestamp, path=str(written)))
    logger.info("media.keyframe.scene_done scene=%s count=%s", scene.scene_number, len(keyframes))
    return SceneKeyframes(scene=scene, keyframes=tuple(keyframes))


def extract_keyframes(
    video_path: str,
    scenes: list[Scene],
    job_dir: Path,
    sampler: FrameSampler,
    *,
    count: int,
    max_workers: int = 1,
) -> list[SceneKeyframes]:
    """Sample `count` keyframes per scene and persist the keyframe manifest."""
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        results = list(
            pool.map(
                lambda item: _extract_scene_keyframes(video_path, item, job_dir, sampler, count),
                scenes,
            )
        )
    results.sort(key=lambda item: item.scene.scene_number)
    write_json(job_dir / KEYFRAMES_MANIFEST, [item.to_payload() for item in results])
    logger.info(
        "media.keyframe.done scenes=%s keyframes=%s",
        len(results),
        sum(len(item.keyframes) for item in results),
    )
    return results


def merge_scene_media(
    keyframe_data: list[SceneKeyframes],
    audio_segments: list[AudioSegment],
) -> list[SceneMediaBundle]:
    """Join keyframes and audio clips by scene number."""
    audio_by_scene = {item.scene.scene_number: item.audio_path for item in audio_segments}
    return [
        SceneMediaBundle(
            scene=item.scene,
            audio_path=audio_by_scene.get(item.scene.scene_number),
            keyframes=item.keyframes,
        )
        for item in keyframe_data
    ]


def load_scene_media(job_dir: Path) -> list[SceneMediaBundle]:
    """Rebuild scene bundles from a job's keyframe and audio manifests."""
    keyframe_payload = read_json(job_dir / KEYFRAMES_MANIFEST)
    try:
        audio_payload = read_json(job_dir / AUDIO_MANIFEST)
    except JobNotFoundError:
        audio_payload = []
    keyframe_data = [
        SceneKeyframes(
            scene=Scene.from_payload(item),
            keyframes=tuple(
                Keyframe(index=int(frame["index"]), timestamp=float(frame["timestamp"]), path=str(frame["path"]))
                for frame in item.get("keyframes", [])
            ),
        )
        for item in keyframe_payload
    ]
    audio_segments = [
        AudioSegment(scene=Scene.from_payload(item), audio_path=str(item["audioPath"]))
        for item in audio_payload
    ]
    return merge_scene_media(keyframe_data, audio_segments)
