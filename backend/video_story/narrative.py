"""Continuity-aware per-scene narration and whole-story composition."""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, TypedDict

from langchain_google_genai import ChatGoogleGenerativeAI
from langgraph.graph import END, START, StateGraph
from openai import OpenAI
from pydantic import ValidationError

from video_story.contracts import (
    SceneInterpretationModel,
    SceneInterpreter,
    SceneMediaBundle,
    SceneOutcome,
    Transcriber,
)
from video_story.storage import PERSONAS_FILE, STORY_FILE, VISION_RESULTS, write_json, write_text

if TYPE_CHECKING:
    from video_story.config import Settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, Any]], None]

MIN_TRANSCRIBE_BYTES = 1000

FILLER_PHRASES: tuple[str, ...] = (
    "musik",
    "music",
    "tiada pertuturan",
    "no speech",
    "no talking",
    "no voice",
    "terima kasih",
    "menonton",
    "subscribe",
    "like",
    "share",
    "follow",
    "komen",
)
_FILLER_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in FILLER_PHRASES) + r")\b",
    flags=re.IGNORECASE,
)


class InterpretationFailure(RuntimeError):
    """Raised when the content-understanding call fails for one scene."""


class CompositionFailure(RuntimeError):
    """Raised when the whole-story composition call fails or returns nothing."""


def _to_text(response: Any) -> str:
    if hasattr(response, "content"):
        content = response.content
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            blocks: list[str] = []
            for block in content:
                if isinstance(block, str):
                    blocks.append(block)
                elif isinstance(block, dict) and "text" in block:
                    blocks.append(str(block["text"]))
            return "\n".join(blocks)
    return str(response)


def _image_data_url(path: Path) -> str:
    mime_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


class GeminiSceneInterpreter:
    """Gemini-backed multimodal scene interpreter and story composer."""

    def __init__(self, google_api_key: str, scene_model_id: str, story_model_id: str) -> None:
        self._scene_model = ChatGoogleGenerativeAI(
            model=scene_model_id,
            google_api_key=google_api_key,
            temperature=0.4,
        )
        self._story_model = ChatGoogleGenerativeAI(
            model=story_model_id,
            google_api_key=google_api_key,
            temperature=0.7,
        )

    def interpret(self, prompt: str, image_paths: list[Path]) -> str:
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for path in image_paths:
            content.append({"type": "image_url", "image_url": {"url": _image_data_url(path)}})
        response = self._scene_model.invoke([{"role": "user", "content": content}])
        return _to_text(response).strip()

    def compose_story(self, prompt: str, story_parts: list[str]) -> str:
        del story_parts
        response = self._story_model.invoke(
            [
                {"role": "system", "content": STORYTELLER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ]
        )
        return _to_text(response).strip()


class FallbackSceneInterpreter:
    """Deterministic no-network interpreter used when no Gemini key is configured."""

    def interpret(self, prompt: str, image_paths: list[Path]) -> str:
        del prompt
        frame_count = len(image_paths)
        return json.dumps(
            {
                "description": f"A scene captured across {frame_count} keyframes.",
                "characters": [],
                "dialogue": None,
                "visualElements": [path.stem for path in image_paths],
                "mood": "neutral",
                "storyPart": f"The story moves on through {frame_count} quiet moments.",
            }
        )

    def compose_story(self, prompt: str, story_parts: list[str]) -> str:
        del prompt
        return "\n\n".join(story_parts)


class OpenAITranscriber:
    """Speech-to-text through the OpenAI audio transcription endpoint."""

    def __init__(self, api_key: str, model_id: str, language: str | None = None) -> None:
        self._client = OpenAI(api_key=api_key)
        self.model_id = model_id
        self.language = language or None

    def transcribe(self, audio_path: Path) -> str | None:
        extra_args: dict[str, Any] = {}
        if self.language:
            extra_args["language"] = self.language
        with audio_path.open("rb") as audio_file:
            response = self._client.audio.transcriptions.create(
                model=self.model_id,
                file=audio_file,
                **extra_args,
            )
        text = (getattr(response, "text", "") or "").strip()
        return text or None


def build_scene_interpreter(settings: "Settings") -> SceneInterpreter:
    """Build the configured interpreter, falling back when no API key is set."""
    if settings.google_api_key:
        return GeminiSceneInterpreter(
            google_api_key=settings.google_api_key,
            scene_model_id=settings.scene_model_id,
            story_model_id=settings.story_model_id,
        )
    logger.warning("GOOGLE_API_KEY missing; using deterministic fallback interpreter")
    return FallbackSceneInterpreter()


def build_transcriber(settings: "Settings") -> Transcriber | None:
    """Build the transcriber, or None when transcription is disabled or unconfigured."""
    if not settings.enable_transcription:
        return None
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY missing; scene audio will not be transcribed")
        return None
    return OpenAITranscriber(
        api_key=settings.openai_api_key,
        model_id=settings.transcription_model_id,
        language=settings.transcription_language,
    )


def load_personas(job_dir: Path) -> str | None:
    """Load job-scoped persona hints, if the caller supplied any."""
    path = job_dir / PERSONAS_FILE
    if not path.is_file():
        return None
    content = path.read_text(encoding="utf-8").strip()
    return content or None


def is_filler_transcript(text: str | None) -> bool:
    """Return True for empty transcripts or ones containing non-content phrases."""
    if not text or not text.strip():
        return True
    return _FILLER_PATTERN.search(text) is not None


def transcribe_scene_audio(audio_path: str | None, transcriber: Transcriber | None) -> str | None:
    """Transcribe one scene clip; silence, noise and failures all mean no speech."""
    if not audio_path or transcriber is None:
        return None
    path = Path(audio_path)
    try:
        if path.stat().st_size < MIN_TRANSCRIBE_BYTES:
            return None
        transcript = transcriber.transcribe(path)
    except Exception as exc:
        logger.warning("narrative.transcribe.failed audio=%s error=%s", audio_path, exc)
        return None
    if is_filler_transcript(transcript):
        return None
    return transcript.strip()


def _position_context(position: int, total: int, scene_number: int) -> str:
    if position == 1:
        return "This is the OPENING scene - introduce the setting and characters."
    if position == total:
        return "This is the FINAL scene - bring the story to a satisfying conclusion."
    return f"This is scene {scene_number} of {total}."


def build_scene_prompt(
    *,
    scene_number: int,
    position: int,
    total: int,
    frame_count: int,
    language: str,
    personas: str | None = None,
    transcript: str | None = None,
    previous_story_part: str | None = None,
) -> str:
    """Build the interpretation prompt for one scene."""
    sections = [
        f"You are a storyteller analyzing Scene {scene_number} of {total} from a video.",
        _position_context(position, total, scene_number),
    ]
    if personas:
        sections.append(
            "## PERSONAS / CHARACTERS:\n"
            f"{personas}\n\n"
            "Use these personas to identify and describe the characters in the scene."
        )
    if transcript:
        sections.append(
            "## AUDIO TRANSCRIPT (what is being said in this scene):\n"
            f'"{transcript}"\n\n'
            "Incorporate this dialogue into the story. "
            "If you are not confident about what is being said, ignore the audio."
        )
    if previous_story_part:
        sections.append(
            "## PREVIOUS SCENE (for narrative continuity):\n"
            f'"{previous_story_part}"\n\n'
            "CONTINUITY RULES:\n"
            "- Continue the story naturally from where the previous scene left off\n"
            "- Do NOT repeat or summarize what happened in the previous scene\n"
            "- Build upon established characters, setting and mood\n"
            "- Create a smooth transition into this new scene"
        )
    sections.append(
        f"Analyze these {frame_count} sequential keyframes and the audio transcript (if provided).\n\n"
        "Your task:\n"
        "1. Scene Description: what is happening visually and who is present\n"
        "2. Dialogue: what is being said and by whom\n"
        "3. Visual Elements: key objects, locations, expressions, movements\n"
        "4. Mood: the emotional tone and atmosphere\n"
        "5. Story Contribution: a NEW narrative paragraph (2-3 sentences) for THIS scene only\n\n"
        "Rules:\n"
        f"- Write the story contribution in {language}\n"
        "- Use character names from personas if provided\n"
        "- Focus only on what is new in this scene and move the story forward"
    )
    sections.append(
        "Respond with only a JSON object:\n"
        "{\n"
        '  "description": "scene description combining visuals and audio",\n'
        '  "characters": ["characters visible or heard"],\n'
        '  "dialogue": "key dialogue from the audio" or null,\n'
        '  "visualElements": ["key", "visual", "elements"],\n'
        '  "mood": "emotional tone",\n'
        f'  "storyPart": "new narrative paragraph in {language} for this scene only"\n'
        "}"
    )
    return "\n\n".join(sections)


def parse_scene_response(text: str) -> SceneInterpretationModel | None:
    """Parse structured scene output from raw, fenced or wrapped model text."""
    candidates: list[str] = []
    stripped = text.strip()
    if stripped:
        candidates.append(stripped)

    fenced_blocks = re.findall(r"```(?:json)?\s*([\s\S]*?)\s*```", stripped, flags=re.IGNORECASE)
    candidates.extend(block.strip() for block in fenced_blocks if block.strip())

    first_brace = stripped.find("{")
    last_brace = stripped.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        candidates.append(stripped[first_brace : last_brace + 1].strip())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        try:
            return SceneInterpretationModel.model_validate(parsed)
        except ValidationError:
            continue
    return None


def interpret_scene(
    bundle: SceneMediaBundle,
    *,
    position: int,
    total: int,
    previous_story_part: str | None,
    personas: str | None,
    interpreter: SceneInterpreter,
    transcriber: Transcriber | None,
    language: str,
) -> SceneOutcome:
    """Run transcription and interpretation for one scene, never raising."""
    scene_number = bundle.scene.scene_number
    transcript = transcribe_scene_audio(bundle.audio_path, transcriber)
    prompt = build_scene_prompt(
        scene_number=scene_number,
        position=position,
        total=total,
        frame_count=len(bundle.keyframes),
        language=language,
        personas=personas,
        transcript=transcript,
        previous_story_part=previous_story_part,
    )
    image_paths = [Path(item.path) for item in bundle.keyframes]
    try:
        raw = interpreter.interpret(prompt, image_paths)
    except Exception as exc:
        failure = InterpretationFailure(str(exc) or type(exc).__name__)
        logger.warning("narrative.scene.failed scene=%s error=%s", scene_number, failure)
        return SceneOutcome(scene_number=scene_number, transcript=transcript, error=str(failure))

    parsed = parse_scene_response(raw)
    if parsed is None:
        logger.info("narrative.scene.unstructured scene=%s", scene_number)
        return SceneOutcome(scene_number=scene_number, transcript=transcript, raw_response=raw)
    return SceneOutcome(scene_number=scene_number, transcript=transcript, interpretation=parsed)


def narrate_scenes(
    bundles: list[SceneMediaBundle],
    *,
    interpreter: SceneInterpreter,
    transcriber: Transcriber | None,
    personas: str | None,
    language: str,
    on_progress: ProgressCallback | None = None,
) -> list[SceneOutcome]:
    """Fold over scenes in ascending order carrying the last successful fragment.

    Context is one scene back only: a failed or skipped predecessor leaves the
    next scene without continuity context.
    """
    ordered = sorted(bundles, key=lambda item: item.scene.scene_number)
    total = len(ordered)
    outcomes: list[SceneOutcome] = []
    previous_story_part: str | None = None
    for position, bundle in enumerate(ordered, start=1):
        scene_number = bundle.scene.scene_number
        if not bundle.keyframes:
            logger.warning("narrative.scene.no_images scene=%s", scene_number)
            previous_story_part = None
            continue
        if on_progress is not None:
            on_progress(
                f"Analyzing scene {scene_number}/{total}",
                {"sceneNumber": scene_number, "totalScenes": total},
            )
        outcome = interpret_scene(
            bundle,
            position=position,
            total=total,
            previous_story_part=previous_story_part,
            personas=personas,
            interpreter=interpreter,
            transcriber=transcriber,
            language=language,
        )
        outcomes.append(outcome)
        previous_story_part = outcome.story_part
    return outcomes


STORYTELLER_SYSTEM_PROMPT = (
    "You are a creative storyteller. Take scene-by-scene descriptions with their dialogue "
    "and weave them into one cohesive, flowing story. Keep character names and personalities "
    "consistent, incorporate dialogue naturally and make smooth transitions between scenes."
)


def build_story_prompt(outcomes: list[SceneOutcome], personas: str | None, language: str) -> str:
    """Build the whole-story composition prompt from successful scenes."""
    descriptions: list[str] = []
    for outcome in outcomes:
        story_part = outcome.story_part
        if not story_part:
            continue
        entry = f"Scene {outcome.scene_number}: {story_part}"
        dialogue = outcome.interpretation.dialogue if outcome.interpretation else None
        if dialogue:
            entry += f'\n   Dialogue: "{dialogue}"'
        descriptions.append(entry)
    personas_block = f"\n\nPERSONAS:\n{personas}" if personas else ""
    return (
        f"Based on these scene descriptions and dialogue, write a cohesive story in {language}."
        f"{personas_block}\n\n"
        "SCENE DESCRIPTIONS:\n"
        + "\n\n".join(descriptions)
        + "\n\nWrite a flowing narrative that:\n"
        "1. Connects all scenes into one story\n"
        "2. Incorporates dialogue naturally using quotation marks\n"
        "3. Maintains consistent character voices\n"
        "4. Has smooth transitions between scenes\n"
        "5. Is 4-6 paragraphs long"
    )


def fallback_story(outcomes: list[SceneOutcome]) -> str:
    """Paragraph-join successful fragments in scene order."""
    ordered = sorted(outcomes, key=lambda item: item.scene_number)
    return "\n\n".join(item.story_part for item in ordered if item.story_part)


def compose_story(
    outcomes: list[SceneOutcome],
    *,
    interpreter: SceneInterpreter,
    personas: str | None,
    language: str,
) -> str:
    """Compose one narrative; fall back to joined fragments when composition fails."""
    story_parts = [item.story_part for item in outcomes if item.story_part]
    if not story_parts:
        logger.warning("narrative.compose.skipped reason=no_successful_scenes")
        return ""
    prompt = build_story_prompt(outcomes, personas, language)
    try:
        story = interpreter.compose_story(prompt, story_parts).strip()
    except Exception as exc:
        failure = CompositionFailure(str(exc) or type(exc).__name__)
    else:
        if story:
            return story
        failure = CompositionFailure("Composition returned an empty story")
    logger.warning("narrative.compose.failed error=%s; using joined fragments", failure)
    return fallback_story(outcomes)


@dataclass(slots=True)
class NarrativeOutcome:
    """Per-scene outcomes plus the composed narrative for a job."""

    results: list[SceneOutcome]
    story: str

    @property
    def scenes_analyzed(self) -> int:
        return sum(1 for item in self.results if item.ok)


class WorkflowState(TypedDict):
    """LangGraph workflow state."""

    bundles: list[SceneMediaBundle]
    results: list[SceneOutcome]
    story: str


def synthesize_narrative(
    job_dir: Path,
    bundles: list[SceneMediaBundle],
    *,
    interpreter: SceneInterpreter,
    transcriber: Transcriber | None,
    settings: "Settings",
    on_progress: ProgressCallback | None = None,
) -> NarrativeOutcome:
    """Narrate every scene, compose the story and persist both artifacts."""
    language = settings.story_language
    personas = load_personas(job_dir)
    if personas:
        logger.info("narrative.personas.loaded job_dir=%s", job_dir)

    def scenes_node(state: WorkflowState) -> dict[str, Any]:
        results = narrate_scenes(
            state["bundles"],
            interpreter=interpreter,
            transcriber=transcriber,
            personas=personas,
            language=language,
            on_progress=on_progress,
        )
        write_json(job_dir / VISION_RESULTS, [item.to_payload() for item in results])
        return {"results": results}

    def story_node(state: WorkflowState) -> dict[str, Any]:
        if on_progress is not None:
            on_progress("Composing final story", {"scenesAnalyzed": len(state["results"])})
        story = compose_story(
            state["results"],
            interpreter=interpreter,
            personas=personas,
            language=language,
        )
        write_text(job_dir / STORY_FILE, story)
        return {"story": story}

    graph_builder = StateGraph(WorkflowState)
    graph_builder.add_node("scenes", scenes_node)
    graph_builder.add_node("story", story_node)
    graph_builder.add_edge(START, "scenes")
    graph_builder.add_edge("scenes", "story")
    graph_builder.add_edge("story", END)
    graph = graph_builder.compile()
    output = graph.invoke({"bundles": bundles, "results": [], "story": ""})

    outcome = NarrativeOutcome(results=output["results"], story=output["story"])
    logger.info(
        "narrative.done scenes=%s analyzed=%s story_chars=%s",
        len(outcome.results),
        outcome.scenes_analyzed,
        len(outcome.story),
    )
    return outcome
