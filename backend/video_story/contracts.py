"""Typed contracts shared across pipeline stages and capability adapters."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field


def round_ms(seconds: float) -> float:
    """Round seconds to millisecond precision."""
    return round(float(seconds) * 1000) / 1000


@dataclass(frozen=True, slots=True)
class Scene:
    """Contiguous time range of the source video, numbered from 1."""

    scene_number: int
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return round_ms(self.end_time - self.start_time)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sceneNumber": self.scene_number,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Scene":
        return cls(
            scene_number=int(payload["sceneNumber"]),
            start_time=float(payload["startTime"]),
            end_time=float(payload["endTime"]),
        )


@dataclass(frozen=True, slots=True)
class Keyframe:
    """One still image sampled inside a scene."""

    index: int
    timestamp: float
    path: str

    def to_payload(self) -> dict[str, Any]:
        return {"index": self.index, "timestamp": self.timestamp, "path": self.path}


@dataclass(frozen=True, slots=True)
class AudioSegment:
    """Audio clip covering one scene."""

    scene: Scene
    audio_path: str

    def to_payload(self) -> dict[str, Any]:
        return {**self.scene.to_payload(), "audioPath": self.audio_path}


@dataclass(frozen=True, slots=True)
class SceneKeyframes:
    """Keyframes produced for one scene, densely indexed from 1."""

    scene: Scene
    keyframes: tuple[Keyframe, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "sceneNumber": self.scene.scene_number,
            "startTime": self.scene.start_time,
            "endTime": self.scene.end_time,
            "keyframes": [item.to_payload() for item in self.keyframes],
        }


@dataclass(frozen=True, slots=True)
class SceneMediaBundle:
    """Audio clip and keyframes for one scene; immutable once extracted."""

    scene: Scene
    audio_path: str | None
    keyframes: tuple[Keyframe, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "sceneNumber": self.scene.scene_number,
            "startTime": self.scene.start_time,
            "endTime": self.scene.end_time,
            "keyframes": [item.to_payload() for item in self.keyframes],
            "audioPath": self.audio_path,
        }


class SceneInterpretationModel(BaseModel):
    """Structured output contract for one interpreted scene."""

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    description: str = ""
    characters: list[str] = Field(default_factory=list)
    dialogue: str | None = None
    visual_elements: list[str] = Field(default_factory=list, alias="visualElements")
    mood: str = ""
    story_part: str = Field(..., min_length=1, alias="storyPart")


@dataclass(slots=True)
class SceneOutcome:
    """Per-scene result of narrative synthesis: a fragment or an error marker."""

    scene_number: int
    transcript: str | None = None
    interpretation: SceneInterpretationModel | None = None
    raw_response: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def story_part(self) -> str | None:
        if self.error is not None:
            return None
        if self.interpretation is not None:
            return self.interpretation.story_part
        if self.raw_response:
            return self.raw_response
        return None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"sceneNumber": self.scene_number}
        if self.error is not None:
            payload["error"] = self.error
            return payload
        if self.interpretation is not None:
            payload.update(self.interpretation.model_dump(by_alias=True))
        elif self.raw_response is not None:
            payload["rawResponse"] = self.raw_response
            payload["storyPart"] = self.raw_response
        payload["transcript"] = self.transcript
        return payload


class SceneInterpreter(Protocol):
    """Content-understanding capability: images + prompt -> structured text."""

    def interpret(self, prompt: str, image_paths: list[Path]) -> str:
        """Return the model's raw text response for one scene."""

    def compose_story(self, prompt: str, story_parts: list[str]) -> str:
        """Return one composed narrative for the whole job."""


class Transcriber(Protocol):
    """Speech-to-text capability for one scene audio clip."""

    def transcribe(self, audio_path: Path) -> str | None:
        """Return transcript text, or None when nothing was recognised."""


class SpeechSynthesizer(Protocol):
    """Text-to-speech capability returning encoded audio bytes."""

    def synthesize(self, text: str) -> bytes:
        """Synthesize one block of text."""


class AudioSampler(Protocol):
    """Clip [start, end) of a video's audio track into a file."""

    def sample_audio(self, video_path: str, start: float, end: float, output_path: Path) -> Path:
        """Write the clip and return its path."""


class FrameSampler(Protocol):
    """Extract single still frames from a video."""

    def sample_frame(self, video_path: str, timestamp: float, output_path: Path) -> Path:
        """Write one frame at `timestamp` and return its path."""
