"""Job coordinator: stage sequencing, manifests and job lookups."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from video_story import jobs
from video_story.contracts import (
    AudioSampler,
    FrameSampler,
    SceneInterpreter,
    SceneMediaBundle,
    SceneOutcome,
    Transcriber,
)
from video_story.media import (
    FfmpegAudioSampler,
    OpenCVFrameSampler,
    extract_keyframes,
    merge_scene_media,
    split_audio_by_scenes,
)
from video_story.narrative import build_scene_interpreter, build_transcriber, synthesize_narrative
from video_story.progress import (
    STAGE_AUDIO_EXTRACTION,
    STAGE_COMPLETE,
    STAGE_ERROR,
    STAGE_INIT,
    STAGE_KEYFRAME_EXTRACTION,
    STAGE_NARRATIVE_SYNTHESIS,
    STAGE_PERSONA_SAVE,
    STAGE_SCENE_SEGMENTATION,
    ProgressEvent,
    ProgressListener,
    ProgressStatus,
)
from video_story.queue_publisher import QueuePublisher, build_queue_publisher
from video_story.scene import SceneDetector, segment_video
from video_story.schemas import JobSummary
from video_story.storage import (
    PERSONAS_FILE,
    RESULT_MANIFEST,
    STORY_FILE,
    VISION_RESULTS,
    JobNotFoundError,
    build_job_dir,
    read_json,
    read_text,
    write_json,
    write_text,
)

if TYPE_CHECKING:
    from video_story.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class PipelineDependencies:
    """External capabilities the pipeline drives."""

    interpreter: SceneInterpreter
    transcriber: Transcriber | None
    audio_sampler: AudioSampler
    frame_sampler: FrameSampler
    queue_publisher: QueuePublisher | None = None
    detector: SceneDetector | None = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PipelineDependencies":
        return cls(
            interpreter=build_scene_interpreter(settings),
            transcriber=build_transcriber(settings),
            audio_sampler=FfmpegAudioSampler(),
            frame_sampler=OpenCVFrameSampler(),
            queue_publisher=build_queue_publisher(settings),
        )


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _emit(
    on_event: ProgressListener | None,
    job_id: str | None,
    stage: str,
    status: ProgressStatus | None,
    message: str,
    details: dict[str, Any] | None = None,
) -> None:
    if job_id is not None:
        jobs.set_job_stage(job_id, stage)
    if on_event is not None:
        on_event(ProgressEvent(stage=stage, status=status, message=message, details=details))


def create_job(
    settings: "Settings",
    source_ref: str,
    *,
    metadata: dict[str, Any] | None = None,
) -> str:
    """Allocate a job id and a fresh output directory, and register the job."""
    job_id = str(uuid.uuid4())
    job_dir = build_job_dir(settings.output_dir, job_id)
    job_dir.mkdir(parents=True, exist_ok=False)
    record = {"video_path": source_ref, "created_at": _utcnow_iso(), "job_dir": str(job_dir)}
    if metadata:
        record.update(metadata)
    jobs.create_job(metadata=record, job_id=job_id)
    logger.info("pipeline.job.created job_id=%s video=%s", job_id, source_ref)
    return job_id


def _build_manifest(
    job_id: str,
    source_ref: str,
    created_at: str,
    bundles: list[SceneMediaBundle],
    *,
    scenes_detected: int,
    audio_segments: int,
    keyframes_extracted: int,
) -> dict[str, Any]:
    return {
        "jobId": job_id,
        "videoPath": source_ref,
        "scenesDetected": scenes_detected,
        "audioSegments": audio_segments,
        "keyframesExtracted": keyframes_extracted,
        "scenesAnalyzed": 0,
        "createdAt": created_at,
        "scenes": [bundle.to_payload() for bundle in bundles],
    }


def _attach_narratives(manifest: dict[str, Any], outcomes: list[SceneOutcome]) -> None:
    by_scene = {item.scene_number: item.to_payload() for item in outcomes}
    for scene_payload in manifest["scenes"]:
        scene_payload["narrative"] = by_scene.get(scene_payload["sceneNumber"])


def run_pipeline(
    job_id: str,
    source_ref: str,
    *,
    settings: "Settings",
    dependencies: PipelineDependencies,
    personas: str | None = None,
    on_event: ProgressListener | None = None,
) -> dict[str, Any]:
    """Run every stage for a created job and return the completion summary.

    Fatal failures mark the job failed, emit one terminal `error` event and
    propagate.
    """
    job_dir = build_job_dir(settings.output_dir, job_id)
    started = time.monotonic()
    job_record = jobs.get_job(job_id) or {}
    created_at = job_record.get("created_at") or _utcnow_iso()
    try:
        _emit(on_event, job_id, STAGE_INIT, "completed", f"Job created: {job_id}", {"jobId": job_id})

        _emit(on_event, job_id, STAGE_SCENE_SEGMENTATION, "started", "Detecting scenes...")
        scenes = segment_video(
            job_dir,
            source_ref,
            settings.scene_detection_threshold,
            detector=dependencies.detector,
        )
        _emit(
            on_event,
            job_id,
            STAGE_SCENE_SEGMENTATION,
            "completed",
            f"Detected {len(scenes)} scenes",
            {"sceneCount": len(scenes)},
        )

        _emit(on_event, job_id, STAGE_AUDIO_EXTRACTION, "started", "Extracting audio segments...")
        audio_segments = split_audio_by_scenes(
            source_ref,
            scenes,
            job_dir,
            dependencies.audio_sampler,
            max_workers=settings.extraction_workers,
        )
        _emit(
            on_event,
            job_id,
            STAGE_AUDIO_EXTRACTION,
            "completed",
            f"Extracted {len(audio_segments)} audio segments",
            {"audioCount": len(audio_segments)},
        )

        _emit(on_event, job_id, STAGE_KEYFRAME_EXTRACTION, "started", "Extracting keyframes...")
        keyframe_data = extract_keyframes(
            source_ref,
            scenes,
            job_dir,
            dependencies.frame_sampler,
            count=settings.keyframes_per_scene,
            max_workers=settings.extraction_workers,
        )
        total_keyframes = sum(len(item.keyframes) for item in keyframe_data)
        _emit(
            on_event,
            job_id,
            STAGE_KEYFRAME_EXTRACTION,
            "completed",
            f"Extracted {total_keyframes} keyframes",
            {"keyframeCount": total_keyframes},
        )

        bundles = merge_scene_media(keyframe_data, audio_segments)
        manifest = _build_manifest(
            job_id,
            source_ref,
            created_at,
            bundles,
            scenes_detected=len(scenes),
            audio_segments=len(audio_segments),
            keyframes_extracted=total_keyframes,
        )

        if personas and personas.strip():
            write_text(job_dir / PERSONAS_FILE, personas.strip())
            _emit(on_event, job_id, STAGE_PERSONA_SAVE, "completed", "Personas saved")

        if dependencies.queue_publisher is not None:
            dependencies.queue_publisher.publish(job_id, source_ref, bundles)

        _emit(
            on_event,
            job_id,
            STAGE_NARRATIVE_SYNTHESIS,
            "started",
            "Starting AI vision analysis...",
            {"totalScenes": len(scenes)},
        )

        def on_narrative_progress(message: str, details: dict[str, Any]) -> None:
            _emit(on_event, job_id, STAGE_NARRATIVE_SYNTHESIS, "processing", message, details)

        narrative = synthesize_narrative(
            job_dir,
            bundles,
            interpreter=dependencies.interpreter,
            transcriber=dependencies.transcriber,
            settings=settings,
            on_progress=on_narrative_progress,
        )
        _emit(
            on_event,
            job_id,
            STAGE_NARRATIVE_SYNTHESIS,
            "completed",
            f"Analyzed {narrative.scenes_analyzed} scenes with AI",
            {"analyzedScenes": narrative.scenes_analyzed},
        )

        processing_time = f"{time.monotonic() - started:.2f}s"
        _attach_narratives(manifest, narrative.results)
        manifest["scenesAnalyzed"] = narrative.scenes_analyzed
        manifest["completedAt"] = _utcnow_iso()
        manifest["processingTime"] = processing_time
        # Single write: lookups stay not-found until every stage has finished.
        write_json(job_dir / RESULT_MANIFEST, manifest)

        summary = JobSummary(
            job_id=job_id,
            scenes_detected=len(scenes),
            audio_segments=len(audio_segments),
            keyframes_extracted=total_keyframes,
            scenes_analyzed=narrative.scenes_analyzed,
            processing_time=processing_time,
            story=narrative.story,
        ).model_dump(by_alias=True)
    except Exception as exc:
        logger.exception("pipeline.failed job_id=%s", job_id)
        jobs.fail_job(job_id, str(exc))
        if on_event is not None:
            on_event(ProgressEvent(stage=STAGE_ERROR, message=str(exc) or type(exc).__name__))
        raise

    jobs.complete_job(job_id, summary)
    logger.info(
        "pipeline.completed job_id=%s scenes=%s analyzed=%s processing_time=%s",
        job_id,
        summary["scenesDetected"],
        summary["scenesAnalyzed"],
        processing_time,
    )
    if on_event is not None:
        on_event(
            ProgressEvent(
                stage=STAGE_COMPLETE,
                message="Video processed and story generated!",
                details=summary,
            )
        )
    return summary


def get_job_dir(settings: "Settings", job_id: str) -> Path:
    """Return an existing job directory or raise JobNotFoundError."""
    job_dir = build_job_dir(settings.output_dir, job_id)
    if not job_dir.is_dir():
        raise JobNotFoundError(f"Job not found: {job_id}")
    return job_dir


def get_job_result(settings: "Settings", job_id: str) -> dict[str, Any]:
    return read_json(get_job_dir(settings, job_id) / RESULT_MANIFEST)


def get_job_story(settings: "Settings", job_id: str) -> str:
    return read_text(get_job_dir(settings, job_id) / STORY_FILE)


def get_combined_story(settings: "Settings", job_id: str) -> str:
    """Space-join the per-scene fragments in scene order."""
    payload = read_json(get_job_dir(settings, job_id) / VISION_RESULTS)
    if not isinstance(payload, list):
        raise JobNotFoundError(f"Vision results are malformed for job {job_id}")
    entries = sorted(
        (item for item in payload if isinstance(item, dict) and not item.get("error")),
        key=lambda item: int(item.get("sceneNumber", 0)),
    )
    return " ".join(str(item["storyPart"]).strip() for item in entries if item.get("storyPart"))
