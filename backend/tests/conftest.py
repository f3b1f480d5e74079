"""Shared fixtures and fake capabilities for the video story test suite."""

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from video_story import jobs
from video_story.contracts import Keyframe, Scene, SceneMediaBundle


# ---------------------------------------------------------------------------
# Autouse fixture: clear job registry before each test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clear_jobs():
    """Ensure every test starts with an empty job registry."""
    jobs.jobs.clear()
    yield
    jobs.jobs.clear()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture()
def settings(tmp_path):
    """Settings stand-in rooted in a temporary directory."""
    return SimpleNamespace(
        output_dir=str(tmp_path / "output"),
        upload_dir=str(tmp_path / "uploads"),
        scene_detection_threshold=30.0,
        keyframes_per_scene=3,
        extraction_workers=2,
        max_upload_bytes=10 * 1024 * 1024,
        max_duration_seconds=1000,
        google_api_key="",
        scene_model_id="scene-model",
        story_model_id="story-model",
        story_language="English",
        openai_api_key="",
        enable_transcription=False,
        transcription_model_id="whisper-1",
        transcription_language="en",
        tts_model_id="tts-model",
        tts_voice="coral",
        tts_speed=1.0,
        tts_instructions="",
        final_tts_model_id="tts-final",
        final_tts_voice="nova",
        final_tts_speed=1.0,
        narration_chunk_chars=2000,
        enable_queue_publisher=False,
        scene_queue_dsn="",
        upload_retention_hours=24,
    )


# ---------------------------------------------------------------------------
# Fake capabilities
# ---------------------------------------------------------------------------

class FakeInterpreter:
    """Scripted scene interpreter.

    `responses` maps scene number (parsed from the prompt) to a JSON-able dict,
    a raw string, or an Exception instance to raise.
    """

    def __init__(self, responses=None, *, compose_result=None, compose_error=None):
        self.responses = responses or {}
        self.compose_result = compose_result
        self.compose_error = compose_error
        self.prompts: list[str] = []
        self.image_calls: list[list[Path]] = []
        self.compose_prompts: list[str] = []

    @staticmethod
    def _scene_number(prompt: str) -> int:
        marker = "analyzing Scene "
        start = prompt.index(marker) + len(marker)
        return int(prompt[start:].split(" ", 1)[0])

    def interpret(self, prompt, image_paths):
        self.prompts.append(prompt)
        self.image_calls.append(list(image_paths))
        scene_number = self._scene_number(prompt)
        response = self.responses.get(scene_number)
        if isinstance(response, Exception):
            raise response
        if response is None:
            response = {
                "description": f"desc {scene_number}",
                "characters": [],
                "dialogue": None,
                "visualElements": [],
                "mood": "calm",
                "storyPart": f"Part {scene_number}.",
            }
        if isinstance(response, dict):
            return json.dumps(response)
        return response

    def compose_story(self, prompt, story_parts):
        self.compose_prompts.append(prompt)
        if self.compose_error is not None:
            raise self.compose_error
        if self.compose_result is not None:
            return self.compose_result
        return "Composed: " + " ".join(story_parts)


class FakeTranscriber:
    def __init__(self, text="Hello there", error=None):
        self.text = text
        self.error = error
        self.calls: list[Path] = []

    def transcribe(self, audio_path):
        self.calls.append(audio_path)
        if self.error is not None:
            raise self.error
        return self.text


class FakeAudioSampler:
    """Writes a placeholder clip large enough to be transcribed."""

    def __init__(self, fail_scenes=(), size=2048):
        self.fail_scenes = set(fail_scenes)
        self.size = size
        self.calls: list[tuple[float, float]] = []

    def sample_audio(self, video_path, start, end, output_path):
        from video_story.media import ExtractionFailure

        self.calls.append((start, end))
        if output_path.stem in {f"scene_{n}" for n in self.fail_scenes}:
            raise ExtractionFailure("boom")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"\0" * self.size)
        return output_path


class FakeFrameSampler:
    """Writes placeholder frames; timestamps in `fail_timestamps` fail."""

    def __init__(self, fail_timestamps=()):
        self.fail_timestamps = set(fail_timestamps)
        self.calls: list[float] = []

    def sample_frame(self, video_path, timestamp, output_path):
        from video_story.media import ExtractionFailure

        self.calls.append(timestamp)
        if timestamp in self.fail_timestamps:
            raise ExtractionFailure(f"no frame at {timestamp}")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"\xff\xd8fake-jpeg")
        return output_path


class FakeSynthesizer:
    def __init__(self, prefix=b"mp3:"):
        self.prefix = prefix
        self.calls: list[str] = []

    def synthesize(self, text):
        self.calls.append(text)
        return self.prefix + text.encode("utf-8")


@pytest.fixture()
def fake_interpreter():
    return FakeInterpreter


@pytest.fixture()
def fake_transcriber():
    return FakeTranscriber


@pytest.fixture()
def fake_audio_sampler():
    return FakeAudioSampler


@pytest.fixture()
def fake_frame_sampler():
    return FakeFrameSampler


@pytest.fixture()
def fake_synthesizer():
    return FakeSynthesizer


# ---------------------------------------------------------------------------
# Scene media bundle factory
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_bundle(tmp_path):
    """Factory creating SceneMediaBundle objects with real placeholder files."""

    def _factory(scene_number, *, start=None, end=None, keyframes=2, audio_bytes=None):
        start_time = float(scene_number - 1) * 2.0 if start is None else start
        end_time = start_time + 2.0 if end is None else end
        scene = Scene(scene_number=scene_number, start_time=start_time, end_time=end_time)
        frames = []
        for index in range(1, keyframes + 1):
            path = tmp_path / "frames" / f"scene_{scene_number}" / f"frame_{index}.jpg"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"\xff\xd8fake")
            frames.append(Keyframe(index=index, timestamp=start_time + index * 0.5, path=str(path)))
        audio_path = None
        if audio_bytes is not None:
            audio = tmp_path / "audio" / f"scene_{scene_number}.wav"
            audio.parent.mkdir(parents=True, exist_ok=True)
            audio.write_bytes(b"\0" * audio_bytes)
            audio_path = str(audio)
        return SceneMediaBundle(scene=scene, audio_path=audio_path, keyframes=tuple(frames))

    return _factory
