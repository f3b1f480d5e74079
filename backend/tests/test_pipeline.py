"""Tests for video_story.pipeline job coordination, end to end with fake capabilities."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from video_story import jobs
from video_story.pipeline import (
    PipelineDependencies,
    create_job,
    get_combined_story,
    get_job_result,
    get_job_story,
    run_pipeline,
)
from video_story.queue_publisher import InMemorySceneJobSink, QueuePublisher
from video_story.scene import SegmentationFailure
from video_story.storage import JobNotFoundError


def _three_scenes(path, threshold):
    return [(0.0, 2.0), (2.0, 4.0), (4.0, 6.0)]


@pytest.fixture()
def build_dependencies(fake_interpreter, fake_audio_sampler, fake_frame_sampler):
    def _factory(*, detector=_three_scenes, interpreter=None, queue_publisher=None, transcriber=None):
        return PipelineDependencies(
            interpreter=interpreter or fake_interpreter(),
            transcriber=transcriber,
            audio_sampler=fake_audio_sampler(),
            frame_sampler=fake_frame_sampler(),
            queue_publisher=queue_publisher,
            detector=detector,
        )

    return _factory


def _run(settings, dependencies, *, personas=None):
    events = []
    job_id = create_job(settings, "/videos/input.mp4")
    summary = run_pipeline(
        job_id,
        "/videos/input.mp4",
        settings=settings,
        dependencies=dependencies,
        personas=personas,
        on_event=events.append,
    )
    return job_id, summary, events


def _result(settings, job_id):
    return json.loads((Path(settings.output_dir) / job_id / "result.json").read_text(encoding="utf-8"))


class TestCreateJob:
    def test_creates_directory_and_registers_job(self, settings):
        job_id = create_job(settings, "/videos/input.mp4")

        assert (Path(settings.output_dir) / job_id).is_dir()
        job = jobs.get_job(job_id)
        assert job["status"] == "processing"
        assert job["video_path"] == "/videos/input.mp4"

    def test_job_ids_are_unique(self, settings):
        assert create_job(settings, "a.mp4") != create_job(settings, "a.mp4")


class TestRunPipeline:
    def test_all_stages_succeed(self, settings, build_dependencies):
        job_id, summary, events = _run(settings, build_dependencies())

        manifest = _result(settings, job_id)
        assert manifest["scenesDetected"] == 3
        assert manifest["audioSegments"] == 3
        assert manifest["keyframesExtracted"] == 9
        assert manifest["scenesAnalyzed"] == 3
        assert manifest["jobId"] == job_id
        assert manifest["completedAt"]
        assert manifest["processingTime"].endswith("s")
        assert [scene["sceneNumber"] for scene in manifest["scenes"]] == [1, 2, 3]
        assert manifest["scenes"][0]["narrative"]["storyPart"] == "Part 1."
        assert summary["story"] == "Composed: Part 1. Part 2. Part 3."
        assert events[-1].stage == "complete"
        assert events[-1].details["scenesAnalyzed"] == 3
        assert jobs.get_job(job_id)["status"] == "completed"

    def test_stage_order(self, settings, build_dependencies):
        _, _, events = _run(settings, build_dependencies(), personas="Ali: hero")

        stages = []
        for event in events:
            if not stages or stages[-1] != event.stage:
                stages.append(event.stage)
        assert stages == [
            "init",
            "scene-segmentation",
            "audio-extraction",
            "keyframe-extraction",
            "persona-save",
            "narrative-synthesis",
            "complete",
        ]
        assert sum(1 for event in events if event.is_terminal) == 1
        processing = [
            event for event in events if event.status == "processing" and "sceneNumber" in event.details
        ]
        assert [event.details["sceneNumber"] for event in processing] == [1, 2, 3]

    def test_failed_scene_does_not_fail_job(self, settings, build_dependencies, fake_interpreter):
        interpreter = fake_interpreter({2: RuntimeError("safety block")})

        job_id, summary, events = _run(settings, build_dependencies(interpreter=interpreter))

        manifest = _result(settings, job_id)
        assert manifest["scenes"][1]["narrative"] == {"sceneNumber": 2, "error": "safety block"}
        assert manifest["scenesAnalyzed"] == 2
        assert "Part 1." in summary["story"] and "Part 3." in summary["story"]
        assert "Part 2." not in summary["story"]
        assert events[-1].stage == "complete"

    def test_zero_boundaries_yield_single_scene(self, settings, build_dependencies):
        with patch("video_story.scene.probe_duration", return_value=7.5):
            job_id, summary, _ = _run(settings, build_dependencies(detector=lambda path, threshold: []))

        manifest = _result(settings, job_id)
        assert manifest["scenesDetected"] == 1
        assert manifest["scenes"][0]["startTime"] == 0.0
        assert manifest["scenes"][0]["endTime"] == 7.5
        assert summary["scenesDetected"] == 1

    def test_segmentation_failure_is_fatal(self, settings, build_dependencies):
        def broken(path, threshold):
            raise RuntimeError("corrupt container")

        events = []
        job_id = create_job(settings, "/videos/input.mp4")
        with pytest.raises(SegmentationFailure):
            run_pipeline(
                job_id,
                "/videos/input.mp4",
                settings=settings,
                dependencies=build_dependencies(detector=broken),
                on_event=events.append,
            )

        assert events[-1].stage == "error"
        assert "corrupt container" in events[-1].message
        assert sum(1 for event in events if event.is_terminal) == 1
        assert not (Path(settings.output_dir) / job_id / "result.json").exists()
        assert jobs.get_job(job_id)["status"] == "failed"

    def test_result_not_served_while_running(self, settings, build_dependencies, fake_interpreter):
        job_id = create_job(settings, "/videos/input.mp4")
        interpreter = fake_interpreter()
        interpret = interpreter.interpret
        lookups = []

        def interpret_and_look_up(prompt, image_paths):
            try:
                get_job_result(settings, job_id)
            except JobNotFoundError:
                lookups.append("not-found")
            else:
                lookups.append("served")
            return interpret(prompt, image_paths)

        interpreter.interpret = interpret_and_look_up
        run_pipeline(
            job_id,
            "/videos/input.mp4",
            settings=settings,
            dependencies=build_dependencies(interpreter=interpreter),
        )

        assert lookups == ["not-found", "not-found", "not-found"]
        assert get_job_result(settings, job_id)["scenesAnalyzed"] == 3

    def test_late_failure_leaves_no_manifest(self, settings, build_dependencies):
        def listener(event):
            if event.stage == "narrative-synthesis" and event.status == "completed":
                raise RuntimeError("listener went away")

        job_id = create_job(settings, "/videos/input.mp4")
        with pytest.raises(RuntimeError, match="listener went away"):
            run_pipeline(
                job_id,
                "/videos/input.mp4",
                settings=settings,
                dependencies=build_dependencies(),
                on_event=listener,
            )

        assert not (Path(settings.output_dir) / job_id / "result.json").exists()
        assert jobs.get_job(job_id)["status"] == "failed"
        with pytest.raises(JobNotFoundError):
            get_job_result(settings, job_id)

    def test_personas_saved_and_scenes_published(self, settings, build_dependencies):
        sink = InMemorySceneJobSink()

        job_id, _, _ = _run(
            settings,
            build_dependencies(queue_publisher=QueuePublisher(sink)),
            personas="  Ali: hero  ",
        )

        job_dir = Path(settings.output_dir) / job_id
        assert (job_dir / "personas.txt").read_text(encoding="utf-8") == "Ali: hero"
        assert sorted(sink.published) == [f"{job_id}:scene-{n}" for n in (1, 2, 3)]

    def test_artifacts_written(self, settings, build_dependencies):
        job_id, _, _ = _run(settings, build_dependencies())

        job_dir = Path(settings.output_dir) / job_id
        for relative in (
            "scenes/scenes.json",
            "audio/audio_segments.json",
            "audio/scenes/scene_1.wav",
            "keyframes/keyframes.json",
            "keyframes/scene_1/frame_1.jpg",
            "vision_results.json",
            "story.txt",
            "result.json",
        ):
            assert (job_dir / relative).exists(), relative


class TestLookups:
    def test_story_and_combined_story(self, settings, build_dependencies):
        job_id, summary, _ = _run(settings, build_dependencies())

        assert get_job_story(settings, job_id) == summary["story"]
        assert get_combined_story(settings, job_id) == "Part 1. Part 2. Part 3."
        assert get_job_result(settings, job_id)["jobId"] == job_id

    def test_unknown_job_raises(self, settings):
        with pytest.raises(JobNotFoundError):
            get_job_result(settings, "00000000-0000-0000-0000-000000000000")
        with pytest.raises(JobNotFoundError):
            get_job_story(settings, "does-not-exist")

    def test_path_traversal_rejected(self, settings):
        with pytest.raises(JobNotFoundError):
            get_job_result(settings, "../etc")
