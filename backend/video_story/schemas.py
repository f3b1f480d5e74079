"""Pydantic models for the story API responses and result manifest."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class KeyframeItem(BaseModel):
    """One sampled keyframe reference."""

    index: int
    timestamp: float
    path: str


class SceneResult(BaseModel):
    """Scene timing, media and narrative data in the result manifest."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True, extra="allow")

    scene_number: int = Field(..., alias="sceneNumber")
    start_time: float = Field(..., alias="startTime")
    end_time: float = Field(..., alias="endTime")
    keyframes: list[KeyframeItem] = Field(default_factory=list)
    audio_path: str | None = Field(default=None, alias="audioPath")
    narrative: dict[str, Any] | None = None


class JobResult(BaseModel):
    """Full result manifest for a job (`result.json`)."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    job_id: str = Field(..., alias="jobId")
    video_path: str = Field(..., alias="videoPath")
    scenes_detected: int = Field(..., alias="scenesDetected")
    audio_segments: int = Field(..., alias="audioSegments")
    keyframes_extracted: int = Field(..., alias="keyframesExtracted")
    scenes_analyzed: int = Field(default=0, alias="scenesAnalyzed")
    created_at: str = Field(..., alias="createdAt")
    completed_at: str | None = Field(default=None, alias="completedAt")
    processing_time: str | None = Field(default=None, alias="processingTime")
    scenes: list[SceneResult] = Field(default_factory=list)


class JobSummary(BaseModel):
    """Terminal `complete` event payload."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    job_id: str = Field(..., alias="jobId")
    scenes_detected: int = Field(..., alias="scenesDetected")
    audio_segments: int = Field(..., alias="audioSegments")
    keyframes_extracted: int = Field(..., alias="keyframesExtracted")
    scenes_analyzed: int = Field(..., alias="scenesAnalyzed")
    processing_time: str = Field(..., alias="processingTime")
    story: str


class JobStatus(BaseModel):
    """Job status response."""

    job_id: str
    status: str
    stage: str | None = None
    error: str | None = None


class StoryResponse(BaseModel):
    """Composed narrative for a job."""

    story: str


class CombinedStoryResponse(BaseModel):
    """Space-joined scene fragments for a job."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    combined_story: str = Field(..., alias="combinedStory")
