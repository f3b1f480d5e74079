"""Remote video acquisition with yt-dlp and upload validation."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import parse_qs, urlparse

from video_story.scene import probe_duration

logger = logging.getLogger(__name__)

ALLOWED_VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "avi", "mkv", "webm", "m4v"})
YOUTUBE_HOSTS = ("youtube.com", "youtu.be", "m.youtube.com")
DOWNLOAD_FORMAT = "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[height<=720][ext=mp4]/best"


class AcquisitionError(RuntimeError):
    """Raised when a remote video cannot be fetched."""


class VideoValidationError(RuntimeError):
    """Raised when a staged video violates upload limits."""


@dataclass(frozen=True, slots=True)
class RemoteVideo:
    """Downloaded remote video and its reported metadata."""

    video_path: Path
    title: str
    duration: float
    size_bytes: int


def is_valid_youtube_url(url: str) -> bool:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return any(host == item or host.endswith("." + item) for item in YOUTUBE_HOSTS)


def clean_youtube_url(url: str) -> str:
    """Strip playlist and tracking parameters so only a single video is fetched."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    host = (parsed.hostname or "").lower()
    if host.endswith("youtube.com") and parsed.path == "/watch":
        video_ids = parse_qs(parsed.query).get("v")
        if video_ids:
            return f"https://www.youtube.com/watch?v={video_ids[0]}"
    if host == "youtu.be":
        return f"https://youtu.be{parsed.path}"
    return url


def _run_ytdlp(args: list[str], binary: str, timeout_seconds: int) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            [binary, *args],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        raise AcquisitionError(f"{binary} not found; install yt-dlp to fetch remote videos") from exc
    except subprocess.TimeoutExpired as exc:
        raise AcquisitionError(f"{binary} timed out after {timeout_seconds}s") from exc


def fetch_video_info(url: str, *, binary: str = "yt-dlp", timeout_seconds: int = 60) -> dict:
    """Return yt-dlp's JSON metadata for a single video."""
    result = _run_ytdlp(["--dump-json", "--no-playlist", url], binary, timeout_seconds)
    if result.returncode != 0:
        raise AcquisitionError(f"Failed to get video info: {result.stderr.strip() or 'unknown error'}")
    try:
        info = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise AcquisitionError("Failed to parse video info") from exc
    if not isinstance(info, dict):
        raise AcquisitionError("Failed to parse video info")
    return info


def download_remote_video(
    url: str,
    output_dir: Path,
    *,
    filename: str,
    max_duration_seconds: int,
    max_bytes: int,
    on_progress: Callable[[str], None] | None = None,
    binary: str = "yt-dlp",
    timeout_seconds: int = 600,
) -> RemoteVideo:
    """Fetch a remote video as MP4 into `output_dir`, enforcing duration and size limits."""
    if not is_valid_youtube_url(url):
        raise AcquisitionError("Invalid YouTube URL")
    clean_url = clean_youtube_url(url)
    output_dir.mkdir(parents=True, exist_ok=True)

    if on_progress is not None:
        on_progress("Fetching video info...")
    info = fetch_video_info(clean_url, binary=binary)
    title = str(info.get("title") or "Unknown")
    duration = float(info.get("duration") or 0)
    logger.info("acquisition.info url=%s title=%s duration=%s", clean_url, title, duration)
    if duration > max_duration_seconds:
        raise VideoValidationError(
            f"Video too long. Maximum duration is {max_duration_seconds} seconds. "
            f"This video is {duration:g} seconds."
        )

    if on_progress is not None:
        on_progress("Downloading video...")
    output_path = output_dir / f"{filename}.mp4"
    result = _run_ytdlp(
        [
            "-f",
            DOWNLOAD_FORMAT,
            "--merge-output-format",
            "mp4",
            "--no-playlist",
            "-o",
            str(output_path),
            clean_url,
        ],
        binary,
        timeout_seconds,
    )
    if result.returncode != 0:
        raise AcquisitionError(f"Download failed: {result.stderr.strip() or 'unknown error'}")
    if not output_path.exists():
        raise AcquisitionError("Download failed - video file not found")

    size_bytes = output_path.stat().st_size
    if size_bytes > max_bytes:
        output_path.unlink(missing_ok=True)
        raise VideoValidationError(
            f"Downloaded video too large. Maximum size is {max_bytes // (1024 * 1024)} MB."
        )
    logger.info("acquisition.done path=%s size_bytes=%s", output_path, size_bytes)
    return RemoteVideo(video_path=output_path, title=title, duration=duration, size_bytes=size_bytes)


def extract_extension(filename: str | None) -> str:
    """Normalized extension token without leading dot."""
    if not filename:
        return ""
    extension = Path(filename).suffix.strip().lower().lstrip(".")
    return "".join(ch for ch in extension if ch.isalnum())


def validate_upload_metadata(filename: str | None, content_type: str | None) -> str:
    """Check extension and content type before staging; return the extension."""
    extension = extract_extension(filename)
    if extension not in ALLOWED_VIDEO_EXTENSIONS:
        raise VideoValidationError(
            "Only video files are allowed (" + ", ".join(sorted(ALLOWED_VIDEO_EXTENSIONS)) + ")"
        )
    if not content_type or not content_type.startswith("video/"):
        raise VideoValidationError("Only video files are allowed")
    return extension


def validate_video_duration(
    video_path: str,
    max_duration_seconds: int,
    *,
    probe: Callable[[str], float] = probe_duration,
) -> float:
    """Probe the staged video and reject anything longer than the limit."""
    duration = probe(video_path)
    if duration > max_duration_seconds:
        raise VideoValidationError(
            f"Video too long. Maximum duration is {max_duration_seconds} seconds. "
            f"Your video is {duration:.2f} seconds."
        )
    return duration
