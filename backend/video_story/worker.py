"""CLI entrypoint: run the whole pipeline or re-run narrative synthesis for a job folder."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from video_story import pipeline
from video_story.config import Settings
from video_story.media import load_scene_media
from video_story.narrative import build_scene_interpreter, build_transcriber, synthesize_narrative
from video_story.progress import log_progress


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="video_story.worker", description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Process a local video end to end")
    run_parser.add_argument("video", type=Path, help="Path to the source video")
    run_parser.add_argument("--personas", type=Path, default=None, help="Text file with persona hints")

    narrate_parser = subparsers.add_parser(
        "narrate", help="Re-run narrative synthesis for an existing job output folder"
    )
    narrate_parser.add_argument("job_dir", type=Path, help="Job output directory")
    return parser


def _run(settings: Settings, video: Path, personas_file: Path | None) -> int:
    if not video.is_file():
        logging.getLogger(__name__).error("Video not found: %s", video)
        return 2
    personas = personas_file.read_text(encoding="utf-8") if personas_file else None
    job_id = pipeline.create_job(settings, str(video))
    summary = pipeline.run_pipeline(
        job_id,
        str(video),
        settings=settings,
        dependencies=pipeline.PipelineDependencies.from_settings(settings),
        personas=personas,
        on_event=log_progress,
    )
    print(summary["story"])
    return 0


def _narrate(settings: Settings, job_dir: Path) -> int:
    bundles = load_scene_media(job_dir)
    outcome = synthesize_narrative(
        job_dir,
        bundles,
        interpreter=build_scene_interpreter(settings),
        transcriber=build_transcriber(settings),
        settings=settings,
        on_progress=lambda message, details: logging.getLogger(__name__).info(
            "narrative.progress message=%s", message
        ),
    )
    print(outcome.story)
    return 0


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = _build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.command == "run":
        return _run(settings, args.video, args.personas)
    return _narrate(settings, args.job_dir)


if __name__ == "__main__":
    sys.exit(main())
