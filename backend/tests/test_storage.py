"""Tests for video_story.storage paths and artifact I/O, and the manifest schema."""

import pytest

from video_story.schemas import JobResult
from video_story.storage import (
    JobNotFoundError,
    build_job_dir,
    build_narration_path,
    build_scene_audio_path,
    build_scene_keyframe_dir,
    read_json,
    read_text,
    validate_job_id,
    write_json,
)


class TestJobIds:
    @pytest.mark.parametrize("job_id", ["0f8fad5b-d9cb-469f-a165-70867728950e", "job_1", "A"])
    def test_accepts_safe_ids(self, job_id):
        assert validate_job_id(job_id) == job_id

    @pytest.mark.parametrize("job_id", ["", "../etc", "a/b", "-leading", "bad..id", "x" * 200])
    def test_rejects_unsafe_ids(self, job_id):
        with pytest.raises(JobNotFoundError):
            validate_job_id(job_id)

    def test_job_dir_under_output_root(self, tmp_path):
        assert build_job_dir(tmp_path, "job-1") == tmp_path / "job-1"


class TestArtifactPaths:
    def test_layout(self, tmp_path):
        assert build_scene_audio_path(tmp_path, 3) == tmp_path / "audio" / "scenes" / "scene_3.wav"
        assert build_scene_keyframe_dir(tmp_path, 2) == tmp_path / "keyframes" / "scene_2"
        assert build_narration_path(tmp_path, "chunked").name == "narration.mp3"
        assert build_narration_path(tmp_path, "final").name == "narration_final.mp3"


class TestArtifactIO:
    def test_write_json_creates_parents(self, tmp_path):
        path = write_json(tmp_path / "scenes" / "scenes.json", [{"sceneNumber": 1, "title": "Café"}])

        assert read_json(path) == [{"sceneNumber": 1, "title": "Café"}]
        assert "Café" in path.read_text(encoding="utf-8")

    def test_missing_artifacts_raise_not_found(self, tmp_path):
        with pytest.raises(JobNotFoundError, match="story.txt"):
            read_text(tmp_path / "story.txt")
        with pytest.raises(JobNotFoundError, match="result.json"):
            read_json(tmp_path / "result.json")

    def test_corrupt_json_raises_not_found(self, tmp_path):
        path = tmp_path / "result.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(JobNotFoundError, match="not valid JSON"):
            read_json(path)


class TestJobResultSchema:
    def test_manifest_round_trips_with_camel_case(self):
        manifest = {
            "jobId": "job-1",
            "videoPath": "/videos/input.mp4",
            "scenesDetected": 1,
            "audioSegments": 0,
            "keyframesExtracted": 1,
            "createdAt": "2026-01-01T00:00:00+00:00",
            "scenes": [
                {
                    "sceneNumber": 1,
                    "startTime": 0.0,
                    "endTime": 1.5,
                    "duration": 1.5,
                    "keyframes": [{"index": 1, "timestamp": 0.75, "path": "frame_1.jpg"}],
                    "audioPath": None,
                    "narrative": {"sceneNumber": 1, "error": "blocked"},
                }
            ],
        }

        dumped = JobResult.model_validate(manifest).model_dump()

        assert dumped["jobId"] == "job-1"
        assert dumped["scenesAnalyzed"] == 0
        assert dumped["scenes"][0]["sceneNumber"] == 1
        assert dumped["scenes"][0]["duration"] == 1.5
        assert dumped["scenes"][0]["narrative"] == {"sceneNumber": 1, "error": "blocked"}
