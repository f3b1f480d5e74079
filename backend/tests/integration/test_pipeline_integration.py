"""End-to-end pipeline run against a generated clip with real media tooling."""

import json
from pathlib import Path

import pytest

from video_story.media import FfmpegAudioSampler, OpenCVFrameSampler
from video_story.narrative import FallbackSceneInterpreter
from video_story.pipeline import PipelineDependencies, create_job, run_pipeline
from video_story.scene import detect_scenes, probe_duration

pytestmark = pytest.mark.integration


class TestSegmentationIntegration:
    def test_scenes_cover_the_clip(self, sample_video):
        scenes = detect_scenes(str(sample_video), 30.0)

        assert scenes[0].start_time == 0.0
        assert scenes[-1].end_time == pytest.approx(probe_duration(str(sample_video)), abs=0.2)
        for previous, current in zip(scenes, scenes[1:]):
            assert previous.end_time == current.start_time


class TestPipelineIntegration:
    def test_full_run_writes_artifacts(self, sample_video, settings):
        dependencies = PipelineDependencies(
            interpreter=FallbackSceneInterpreter(),
            transcriber=None,
            audio_sampler=FfmpegAudioSampler(),
            frame_sampler=OpenCVFrameSampler(),
        )
        job_id = create_job(settings, str(sample_video))

        summary = run_pipeline(job_id, str(sample_video), settings=settings, dependencies=dependencies)

        job_dir = Path(settings.output_dir) / job_id
        manifest = json.loads((job_dir / "result.json").read_text(encoding="utf-8"))
        assert summary["scenesDetected"] == manifest["scenesDetected"] >= 1
        assert manifest["audioSegments"] == manifest["scenesDetected"]
        assert manifest["scenesAnalyzed"] == manifest["scenesDetected"]
        for scene in manifest["scenes"]:
            audio = job_dir / "audio" / "scenes" / f"scene_{scene['sceneNumber']}.wav"
            assert audio.stat().st_size > 0
            assert scene["keyframes"]
            for frame in scene["keyframes"]:
                assert Path(frame["path"]).read_bytes()[:2] == b"\xff\xd8"
        assert (job_dir / "story.txt").read_text(encoding="utf-8").strip()
