"""Shared fixtures for integration tests using real ffmpeg and OpenCV."""

import shutil
import subprocess
from pathlib import Path

import pytest


def _require_ffmpeg() -> str:
    binary = shutil.which("ffmpeg")
    if binary is None:
        pytest.skip("ffmpeg is not installed; integration tests need it to build a sample clip")
    return binary


@pytest.fixture(scope="session")
def sample_video(tmp_path_factory) -> Path:
    """Four-second clip: two seconds of red, a hard cut to blue, and a sine tone throughout."""
    ffmpeg = _require_ffmpeg()
    output = tmp_path_factory.mktemp("media") / "two_scenes.mp4"
    command = [
        ffmpeg,
        "-y",
        "-loglevel",
        "error",
        "-f",
        "lavfi",
        "-i",
        "color=c=red:s=320x240:d=2:r=25",
        "-f",
        "lavfi",
        "-i",
        "color=c=blue:s=320x240:d=2:r=25",
        "-f",
        "lavfi",
        "-i",
        "sine=frequency=440:duration=4",
        "-filter_complex",
        "[0:v][1:v]concat=n=2:v=1:a=0[v]",
        "-map",
        "[v]",
        "-map",
        "2:a",
        "-c:v",
        "mpeg4",
        "-c:a",
        "aac",
        "-shortest",
        str(output),
    ]
    result = subprocess.run(command, capture_output=True, text=True, check=False)
    if result.returncode != 0 or not output.exists():
        pytest.skip(f"ffmpeg could not build the sample clip: {result.stderr.strip()}")
    return output
