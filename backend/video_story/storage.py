"""Per-job output directory layout and JSON artifact persistence."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Literal

NarrationKind = Literal["chunked", "final"]

SCENES_MANIFEST = Path("scenes") / "scenes.json"
AUDIO_MANIFEST = Path("audio") / "audio_segments.json"
KEYFRAMES_MANIFEST = Path("keyframes") / "keyframes.json"
VISION_RESULTS = Path("vision_results.json")
STORY_FILE = Path("story.txt")
PERSONAS_FILE = Path("personas.txt")
RESULT_MANIFEST = Path("result.json")

_NARRATION_FILE: dict[NarrationKind, str] = {
    "chunked": "narration.mp3",
    "final": "narration_final.mp3",
}

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class JobNotFoundError(LookupError):
    """Raised when a job, or one of its completed artifacts, does not exist."""


def validate_job_id(job_id: str) -> str:
    """Reject identifiers that could escape the output directory."""
    if not isinstance(job_id, str) or not _JOB_ID_PATTERN.match(job_id):
        raise JobNotFoundError(f"Unknown job '{job_id}'")
    return job_id


def build_job_dir(output_dir: str | Path, job_id: str) -> Path:
    """Build the deterministic output directory for a job."""
    return Path(output_dir) / validate_job_id(job_id)


def build_scene_audio_path(job_dir: Path, scene_number: int) -> Path:
    return job_dir / "audio" / "scenes" / f"scene_{scene_number}.wav"


def build_scene_keyframe_dir(job_dir: Path, scene_number: int) -> Path:
    return job_dir / "keyframes" / f"scene_{scene_number}"


def build_narration_path(job_dir: Path, kind: NarrationKind) -> Path:
    """Build the cache path for one narration artifact kind."""
    return job_dir / _NARRATION_FILE[kind]


def write_json(path: Path, payload: Any) -> Path:
    """Write an indented JSON document, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def read_json(path: Path) -> Any:
    """Read a JSON artifact, mapping missing or corrupt files to JobNotFoundError."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise JobNotFoundError(f"Artifact not found: {path.name}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise JobNotFoundError(f"Artifact is not valid JSON: {path.name}") from exc


def write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise JobNotFoundError(f"Artifact not found: {path.name}") from exc
