"""FastAPI application for the video story API."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from video_story import cleanup, jobs, pipeline
from video_story.acquisition import (
    AcquisitionError,
    VideoValidationError,
    download_remote_video,
    validate_upload_metadata,
    validate_video_duration,
)
from video_story.config import Settings
from video_story.narration import (
    NarrationGenerator,
    build_narration_generator,
    narrate_final_story,
    narrate_story_parts,
)
from video_story.progress import (
    STAGE_ACQUISITION,
    STAGE_ERROR,
    STAGE_VALIDATION,
    ProgressChannel,
    ProgressEvent,
)
from video_story.schemas import CombinedStoryResponse, JobResult, JobStatus, StoryResponse
from video_story.storage import JobNotFoundError, build_narration_path

logger = logging.getLogger(__name__)

SETTINGS = Settings.from_env()
UPLOAD_DIR = Path(SETTINGS.upload_dir)
UPLOAD_CHUNK_BYTES = 1024 * 1024
_dependencies: pipeline.PipelineDependencies | None = None
_narration_generator: NarrationGenerator | None = None
_background_tasks: set[asyncio.Task] = set()


def get_dependencies() -> pipeline.PipelineDependencies:
    """Build and cache pipeline capabilities."""
    global _dependencies
    if _dependencies is None:
        _dependencies = pipeline.PipelineDependencies.from_settings(SETTINGS)
    return _dependencies


def get_narration_generator() -> NarrationGenerator:
    """Build and cache the narration generator."""
    global _narration_generator
    if _narration_generator is None:
        _narration_generator = build_narration_generator(SETTINGS)
    return _narration_generator


def _startup_validate_settings() -> None:
    """Log missing credentials during startup validation."""
    missing_llm = SETTINGS.missing_llm_fields()
    if missing_llm:
        logger.warning(
            "Missing LLM configuration at startup: %s. "
            "Scene interpretation will use deterministic fallback generation.",
            ", ".join(missing_llm),
        )
    missing_speech = SETTINGS.missing_speech_fields()
    if missing_speech:
        logger.warning(
            "Missing speech configuration at startup: %s. "
            "Transcription is disabled and narration endpoints will fail until configured.",
            ", ".join(missing_speech),
        )


def _emit_error(channel: ProgressChannel, message: str) -> None:
    channel.emit(ProgressEvent(stage=STAGE_ERROR, message=message))


def process_submission(
    channel: ProgressChannel,
    *,
    video_path: str | None = None,
    youtube_url: str | None = None,
    personas: str | None = None,
) -> None:
    """Worker-thread task: acquire, validate, then run the pipeline for one submission."""
    try:
        if youtube_url is not None:
            channel.emit(
                ProgressEvent(
                    stage=STAGE_ACQUISITION,
                    status="started",
                    message="Fetching video from YouTube...",
                    details={"url": youtube_url},
                )
            )
            remote = download_remote_video(
                youtube_url,
                UPLOAD_DIR,
                filename=f"yt-{uuid.uuid4().hex}",
                max_duration_seconds=SETTINGS.max_duration_seconds,
                max_bytes=SETTINGS.max_upload_bytes,
                on_progress=lambda message: channel.emit(
                    ProgressEvent(stage=STAGE_ACQUISITION, status="processing", message=message)
                ),
            )
            channel.emit(
                ProgressEvent(
                    stage=STAGE_ACQUISITION,
                    status="completed",
                    message=f"Downloaded: {remote.title}",
                    details={"title": remote.title, "duration": remote.duration},
                )
            )
            channel.emit(
                ProgressEvent(stage=STAGE_VALIDATION, status="started", message="Checking video duration...")
            )
            video_path = str(remote.video_path)
            duration = remote.duration
        else:
            channel.emit(
                ProgressEvent(stage=STAGE_VALIDATION, status="started", message="Checking video duration...")
            )
            duration = validate_video_duration(video_path, SETTINGS.max_duration_seconds)
        channel.emit(
            ProgressEvent(
                stage=STAGE_VALIDATION,
                status="completed",
                message=f"Video validated: {duration:.2f}s duration",
                details={"durationSeconds": round(duration, 2)},
            )
        )
    except (AcquisitionError, VideoValidationError) as exc:
        logger.warning("upload.rejected error=%s", exc)
        _emit_error(channel, str(exc))
        return

    try:
        job_id = pipeline.create_job(SETTINGS, video_path)
    except OSError as exc:
        logger.exception("upload.job_create_failed video=%s", video_path)
        _emit_error(channel, f"Failed to create job: {exc}")
        return

    try:
        pipeline.run_pipeline(
            job_id,
            video_path,
            settings=SETTINGS,
            dependencies=get_dependencies(),
            personas=personas,
            on_event=channel.emit,
        )
    except Exception:
        # Already logged, recorded on the job and reported as the terminal event.
        return


async def _stage_upload(video: UploadFile, extension: str) -> Path:
    """Stream the uploaded file into the staging directory with a size check."""
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    staged_path = UPLOAD_DIR / f"{uuid.uuid4().hex}.{extension}"
    size = 0
    try:
        with staged_path.open("wb") as f:
            while chunk := await video.read(UPLOAD_CHUNK_BYTES):
                size += len(chunk)
                if size > SETTINGS.max_upload_bytes:
                    raise VideoValidationError(
                        f"File exceeds {SETTINGS.max_upload_bytes // (1024 * 1024)} MB limit"
                    )
                f.write(chunk)
    except Exception:
        staged_path.unlink(missing_ok=True)
        raise
    logger.info("upload.staged path=%s size_bytes=%s", staged_path, size)
    return staged_path


def _start_background(channel: ProgressChannel, **kwargs) -> None:
    task = asyncio.create_task(asyncio.to_thread(process_submission, channel, **kwargs))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _sse_response(channel: ProgressChannel) -> StreamingResponse:
    return StreamingResponse(
        channel.sse_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: validate settings, start scheduler. Shutdown: stop scheduler."""
    _startup_validate_settings()
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    Path(SETTINGS.output_dir).mkdir(parents=True, exist_ok=True)
    cleanup.setup_scheduler(str(UPLOAD_DIR), SETTINGS.upload_retention_hours)
    yield
    cleanup.shutdown_scheduler()


app = FastAPI(
    title="Video Story API",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.post("/api/upload")
async def upload_video(
    video: UploadFile | None = File(default=None),
    resource_type: str = Form(default="file"),
    youtube_url: str | None = Form(default=None, alias="youtubeUrl"),
    personas: str | None = Form(default=None),
):
    """Accept an upload or a remote URL and stream pipeline progress as SSE."""
    channel = ProgressChannel(loop=asyncio.get_running_loop())

    if resource_type == "url":
        if not youtube_url:
            _emit_error(channel, "No YouTube URL provided")
            return _sse_response(channel)
        _start_background(channel, youtube_url=youtube_url.strip(), personas=personas)
        return _sse_response(channel)

    if video is None or not video.filename:
        _emit_error(channel, "No video file uploaded")
        return _sse_response(channel)
    try:
        extension = validate_upload_metadata(video.filename, video.content_type)
        staged_path = await _stage_upload(video, extension)
    except VideoValidationError as exc:
        logger.warning("upload.rejected filename=%s error=%s", video.filename, exc)
        _emit_error(channel, str(exc))
        return _sse_response(channel)

    logger.info("upload.accepted filename=%s staged=%s", video.filename, staged_path)
    _start_background(channel, video_path=str(staged_path), personas=personas)
    return _sse_response(channel)


@app.get("/api/job/{job_id}", response_model=JobResult)
async def get_job_result(job_id: str):
    """Return the result manifest for a job."""
    return JobResult.model_validate(pipeline.get_job_result(SETTINGS, job_id))


@app.get("/api/job/{job_id}/status", response_model=JobStatus)
async def get_status(job_id: str):
    """Return job lifecycle status (processing, completed, failed)."""
    job = jobs.get_job(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    return JobStatus(
        job_id=job_id,
        status=job["status"],
        stage=job.get("stage"),
        error=job.get("error"),
    )


@app.get("/api/job/{job_id}/story", response_model=StoryResponse)
async def get_story(job_id: str):
    return StoryResponse(story=pipeline.get_job_story(SETTINGS, job_id))


@app.get("/api/job/{job_id}/combined-story")
async def get_combined_story(job_id: str):
    combined = pipeline.get_combined_story(SETTINGS, job_id)
    return JSONResponse(CombinedStoryResponse(combined_story=combined).model_dump(by_alias=True))


def _resolve_narration_generator() -> NarrationGenerator:
    try:
        return get_narration_generator()
    except RuntimeError as exc:
        raise HTTPException(503, str(exc)) from exc


@app.get("/api/job/{job_id}/narration")
async def get_narration(job_id: str):
    """Chunked narration of the scene fragments, synthesized on first request."""
    job_dir = pipeline.get_job_dir(SETTINGS, job_id)
    generator = _resolve_narration_generator()
    path = await asyncio.to_thread(narrate_story_parts, generator, job_dir)
    return FileResponse(path, media_type="audio/mpeg", filename=f"narration-{job_id}.mp3")


@app.get("/api/job/{job_id}/narration/stream")
async def stream_narration(job_id: str):
    """Serve previously generated chunked narration without synthesizing."""
    path = build_narration_path(pipeline.get_job_dir(SETTINGS, job_id), "chunked")
    if not path.exists():
        raise HTTPException(404, "Narration not generated yet")
    return FileResponse(path, media_type="audio/mpeg")


@app.get("/api/job/{job_id}/narration/final")
async def get_final_narration(job_id: str):
    """Whole-story narration of the composed narrative, synthesized on first request."""
    job_dir = pipeline.get_job_dir(SETTINGS, job_id)
    generator = _resolve_narration_generator()
    path = await asyncio.to_thread(narrate_final_story, generator, job_dir)
    return FileResponse(path, media_type="audio/mpeg", filename=f"narration-final-{job_id}.mp3")
