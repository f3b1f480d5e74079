"""Best-effort hand-off of per-scene jobs to downstream consumers."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

import psycopg
from psycopg.rows import dict_row

from video_story.contracts import SceneMediaBundle

if TYPE_CHECKING:
    from video_story.config import Settings

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS scene_jobs (
    id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    job_id TEXT NOT NULL,
    scene_number INTEGER NOT NULL,
    idempotency_key TEXT NOT NULL UNIQUE,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

CREATE_JOB_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_scene_jobs_job_id
ON scene_jobs (job_id, scene_number)
"""

INSERT_SCENE_JOB_SQL = """
INSERT INTO scene_jobs (name, job_id, scene_number, idempotency_key, payload)
VALUES (
    %(name)s,
    %(job_id)s,
    %(scene_number)s,
    %(idempotency_key)s,
    %(payload)s::jsonb
)
ON CONFLICT (idempotency_key) DO NOTHING
"""


class PublishFailure(RuntimeError):
    """Raised by a sink when scene jobs cannot be handed off."""


@dataclass(frozen=True, slots=True)
class SceneJobDescriptor:
    """Queue message describing one scene for downstream consumers."""

    name: str
    data: dict[str, Any]

    @property
    def idempotency_key(self) -> str:
        return f"{self.data['jobId']}:{self.name}"

    def to_payload(self) -> dict[str, Any]:
        return {"name": self.name, "data": self.data}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_scene_job_descriptors(
    job_id: str,
    source_ref: str,
    bundles: list[SceneMediaBundle],
) -> list[SceneJobDescriptor]:
    """Build one `scene-<n>` descriptor per scene bundle, in scene order."""
    created_at = _utcnow().isoformat()
    descriptors: list[SceneJobDescriptor] = []
    for bundle in sorted(bundles, key=lambda item: item.scene.scene_number):
        scene = bundle.scene
        descriptors.append(
            SceneJobDescriptor(
                name=f"scene-{scene.scene_number}",
                data={
                    "jobId": job_id,
                    "videoPath": source_ref,
                    "sceneNumber": scene.scene_number,
                    "startTime": scene.start_time,
                    "endTime": scene.end_time,
                    "audioPath": bundle.audio_path,
                    "keyframes": [
                        {"timestamp": item.timestamp, "path": item.path} for item in bundle.keyframes
                    ],
                    "createdAt": created_at,
                },
            )
        )
    return descriptors


class SceneJobSink(Protocol):
    """Destination for scene job descriptors."""

    def ensure_schema(self) -> None:
        """Create backing storage if needed."""

    def publish(self, descriptors: list[SceneJobDescriptor]) -> None:
        """Deliver descriptors or raise PublishFailure."""


class LocalLogSink:
    """Sink that records descriptors as structured log lines."""

    def ensure_schema(self) -> None:
        return None

    def publish(self, descriptors: list[SceneJobDescriptor]) -> None:
        for descriptor in descriptors:
            logger.info(
                "queue.local.published name=%s job_id=%s payload=%s",
                descriptor.name,
                descriptor.data.get("jobId"),
                json.dumps(descriptor.data, ensure_ascii=False),
            )


class InMemorySceneJobSink:
    """In-memory sink used in tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.published: dict[str, SceneJobDescriptor] = {}

    def ensure_schema(self) -> None:
        return None

    def publish(self, descriptors: list[SceneJobDescriptor]) -> None:
        with self._lock:
            for descriptor in descriptors:
                self.published.setdefault(descriptor.idempotency_key, descriptor)


class PostgresSceneJobQueue:
    """Postgres-backed scene job table."""

    def __init__(self, *, dsn: str, connect_factory: Any | None = None) -> None:
        self._dsn = dsn
        self._connect_factory = connect_factory

    def _connect(self) -> Any:
        if self._connect_factory is not None:
            return self._connect_factory()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(CREATE_TABLE_SQL)
                cur.execute(CREATE_JOB_INDEX_SQL)
            conn.commit()

    def publish(self, descriptors: list[SceneJobDescriptor]) -> None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    for descriptor in descriptors:
                        cur.execute(
                            INSERT_SCENE_JOB_SQL,
                            {
                                "name": descriptor.name,
                                "job_id": descriptor.data["jobId"],
                                "scene_number": descriptor.data["sceneNumber"],
                                "idempotency_key": descriptor.idempotency_key,
                                "payload": json.dumps(descriptor.data),
                            },
                        )
                conn.commit()
        except psycopg.Error as exc:
            raise PublishFailure(f"Failed to publish {len(descriptors)} scene jobs: {exc}") from exc


class QueuePublisher:
    """Publish scene descriptors, falling back to the local sink on failure."""

    def __init__(self, sink: SceneJobSink, fallback: SceneJobSink | None = None) -> None:
        self.sink = sink
        self.fallback = fallback or LocalLogSink()

    def publish(
        self,
        job_id: str,
        source_ref: str,
        bundles: list[SceneMediaBundle],
    ) -> list[SceneJobDescriptor]:
        """Publish one descriptor per scene; never raises."""
        descriptors = build_scene_job_descriptors(job_id, source_ref, bundles)
        if not descriptors:
            return descriptors
        try:
            self.sink.publish(descriptors)
        except PublishFailure as exc:
            logger.warning("queue.publish.failed job_id=%s error=%s; using local sink", job_id, exc)
            self.fallback.publish(descriptors)
            return descriptors
        logger.info("queue.publish.done job_id=%s count=%s", job_id, len(descriptors))
        return descriptors


def build_queue_publisher(settings: "Settings") -> QueuePublisher:
    """Select the sink once at startup: Postgres when enabled and reachable, else local."""
    if not settings.enable_queue_publisher or not settings.scene_queue_dsn:
        return QueuePublisher(LocalLogSink())
    queue = PostgresSceneJobQueue(dsn=settings.scene_queue_dsn)
    try:
        queue.ensure_schema()
    except psycopg.Error as exc:
        logger.warning("queue.init.failed error=%s; using local sink", exc)
        return QueuePublisher(LocalLogSink())
    return QueuePublisher(queue)
