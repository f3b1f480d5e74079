"""Narration audio: sentence-safe chunking, speech synthesis and on-disk caching."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from openai import OpenAI

from video_story.contracts import SpeechSynthesizer
from video_story.storage import (
    STORY_FILE,
    VISION_RESULTS,
    JobNotFoundError,
    NarrationKind,
    build_narration_path,
    read_json,
    read_text,
)

if TYPE_CHECKING:
    from video_story.config import Settings

logger = logging.getLogger(__name__)

_SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+[\])'\"`’”]*|.+", flags=re.DOTALL)


def split_text_by_sentence(text: str, max_len: int) -> list[str]:
    """Greedily pack whole sentences into chunks of at most `max_len` characters.

    A sentence is never split; one longer than `max_len` becomes its own chunk.
    Trailing text without terminal punctuation is kept as a final sentence.
    """
    sentences = [match.group(0) for match in _SENTENCE_PATTERN.finditer(text)]
    chunks: list[str] = []
    current = ""
    for sentence in sentences:
        if len(current) + len(sentence) > max_len and current:
            chunks.append(current.strip())
            current = sentence
        else:
            current += sentence
    if current.strip():
        chunks.append(current.strip())
    return [chunk for chunk in chunks if chunk]


class OpenAISpeechSynthesizer:
    """Text-to-speech through the OpenAI audio speech endpoint (MP3 output)."""

    def __init__(
        self,
        api_key: str,
        model_id: str,
        voice: str,
        speed: float = 1.0,
        instructions: str | None = None,
    ) -> None:
        self._client = OpenAI(api_key=api_key)
        self.model_id = model_id
        self.voice = voice
        self.speed = speed
        self.instructions = instructions or None

    def synthesize(self, text: str) -> bytes:
        extra_args: dict[str, Any] = {}
        if self.instructions:
            extra_args["instructions"] = self.instructions
        response = self._client.audio.speech.create(
            model=self.model_id,
            voice=self.voice,
            input=text,
            speed=self.speed,
            response_format="mp3",
            **extra_args,
        )
        return response.content


class NarrationGenerator:
    """Produce and cache narration audio for a job directory."""

    def __init__(
        self,
        chunk_synthesizer: SpeechSynthesizer,
        final_synthesizer: SpeechSynthesizer | None = None,
        *,
        max_chunk_chars: int = 2000,
    ) -> None:
        self.chunk_synthesizer = chunk_synthesizer
        self.final_synthesizer = final_synthesizer or chunk_synthesizer
        self.max_chunk_chars = max_chunk_chars

    def generate(self, job_dir: Path, text: str, *, kind: NarrationKind = "chunked") -> Path:
        """Return the cached narration for `kind`, synthesizing it on first use."""
        output_path = build_narration_path(job_dir, kind)
        if output_path.exists():
            logger.info("narration.cache.hit job_dir=%s kind=%s", job_dir, kind)
            return output_path

        if kind == "final":
            audio = self.final_synthesizer.synthesize(text)
            chunk_count = 1
        else:
            chunks = split_text_by_sentence(text, self.max_chunk_chars)
            if not chunks:
                raise ValueError("No text to narrate")
            audio_parts: list[bytes] = []
            for index, chunk in enumerate(chunks, start=1):
                logger.info(
                    "narration.chunk.start index=%s of=%s chars=%s", index, len(chunks), len(chunk)
                )
                audio_parts.append(self.chunk_synthesizer.synthesize(chunk))
            audio = b"".join(audio_parts)
            chunk_count = len(chunks)

        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = output_path.with_suffix(output_path.suffix + ".tmp")
        tmp_path.write_bytes(audio)
        tmp_path.replace(output_path)
        logger.info(
            "narration.done job_dir=%s kind=%s chunks=%s bytes=%s",
            job_dir,
            kind,
            chunk_count,
            len(audio),
        )
        return output_path

    def cached(self, job_dir: Path, kind: NarrationKind = "chunked") -> Path | None:
        path = build_narration_path(job_dir, kind)
        return path if path.exists() else None


def collect_story_parts(job_dir: Path) -> str:
    """Paragraph-join successful scene fragments from the vision results, in scene order."""
    payload = read_json(job_dir / VISION_RESULTS)
    if not isinstance(payload, list):
        raise JobNotFoundError(f"Artifact is malformed: {VISION_RESULTS}")
    entries = sorted(
        (item for item in payload if isinstance(item, dict) and not item.get("error")),
        key=lambda item: int(item.get("sceneNumber", 0)),
    )
    parts = [str(item["storyPart"]).strip() for item in entries if item.get("storyPart")]
    text = "\n\n".join(part for part in parts if part)
    if not text:
        raise JobNotFoundError("No story parts available for narration")
    return text


def narrate_story_parts(generator: NarrationGenerator, job_dir: Path) -> Path:
    """Chunk-path narration built from per-scene fragments."""
    if generator.cached(job_dir, "chunked") is not None:
        return build_narration_path(job_dir, "chunked")
    return generator.generate(job_dir, collect_story_parts(job_dir), kind="chunked")


def narrate_final_story(generator: NarrationGenerator, job_dir: Path) -> Path:
    """Whole-story narration built from the composed narrative."""
    if generator.cached(job_dir, "final") is not None:
        return build_narration_path(job_dir, "final")
    story = read_text(job_dir / STORY_FILE).strip()
    if not story:
        raise JobNotFoundError("Story is empty")
    return generator.generate(job_dir, story, kind="final")


def build_narration_generator(settings: "Settings") -> NarrationGenerator:
    """Build the generator with OpenAI synthesizers for both narration paths."""
    if not settings.openai_api_key:
        raise RuntimeError("Missing required speech settings: OPENAI_API_KEY")
    chunk_synthesizer = OpenAISpeechSynthesizer(
        api_key=settings.openai_api_key,
        model_id=settings.tts_model_id,
        voice=settings.tts_voice,
        speed=settings.tts_speed,
        instructions=settings.tts_instructions,
    )
    final_synthesizer = OpenAISpeechSynthesizer(
        api_key=settings.openai_api_key,
        model_id=settings.final_tts_model_id,
        voice=settings.final_tts_voice,
        speed=settings.final_tts_speed,
    )
    return NarrationGenerator(
        chunk_synthesizer,
        final_synthesizer,
        max_chunk_chars=settings.narration_chunk_chars,
    )
