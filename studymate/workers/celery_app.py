"""
Celery Application Factory

Configures the Celery app for async document ingestion.
Broker: Redis (redis://) by default; RabbitMQ (amqp://) works unchanged.
Result backend: Redis — carries PROGRESS state for polling; the durable
status lives in PostgreSQL (documents.processing_status).

Queue topology:
  documents.ingest   — document ingestion pipeline
  documents.retry    — back-off retries and stale-run recovery
  system.health      — internal health-check tasks

Never pass raw file bytes in task payloads: tasks receive a document id and
load the PDF from storage inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from studymate.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Task names
# ---------------------------------------------------------------------------

PROCESS_DOCUMENT_TASK = "studymate.workers.tasks.process_document"
RECOVER_STALE_TASK    = "studymate.workers.tasks.recover_stale_documents"
HEALTH_CHECK_TASK     = "studymate.workers.tasks.health_check"

INGEST_QUEUE = "documents.ingest"
RETRY_QUEUE  = "documents.retry"
HEALTH_QUEUE = "system.health"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

INGEST_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        INGEST_QUEUE,
        exchange=INGEST_EXCHANGE,
        routing_key=INGEST_QUEUE,
        durable=True,
    ),
    Queue(
        RETRY_QUEUE,
        exchange=INGEST_EXCHANGE,
        routing_key=RETRY_QUEUE,
        durable=True,
    ),
    Queue(
        HEALTH_QUEUE,
        Exchange("system", type="direct"),
        routing_key=HEALTH_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    PROCESS_DOCUMENT_TASK: {"queue": INGEST_QUEUE},
    RECOVER_STALE_TASK:    {"queue": RETRY_QUEUE},
    HEALTH_CHECK_TASK:     {"queue": HEALTH_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("studymate")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=INGEST_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=INGEST_QUEUE,

        # --- Reliability ---
        task_acks_late=True,         # ack only after task completes (prevents message loss on crash)
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,  # one task at a time per worker
        task_track_started=True,

        # --- Timeouts ---
        # Hard limit equals the run-lock TTL so a killed run's lock is
        # reclaimable as soon as the worker is gone.
        task_soft_time_limit=settings.processing_lock_ttl_seconds - 60,
        task_time_limit=settings.processing_lock_ttl_seconds,

        # --- Result TTL ---
        result_expires=3600,   # status is tracked in PostgreSQL, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-run recovery) ---
        beat_schedule={
            "recover-stale-documents-every-60s": {
                "task":     RECOVER_STALE_TASK,
                "schedule": 60,
                "options":  {"queue": RETRY_QUEUE},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to prevent memory bloat
    )

    app.autodiscover_tasks(["studymate.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured task logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s attempt=%s",
        task_id, task.name,
        kwargs.get("document_id", "?"),
        kwargs.get("attempt", 0),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, kwargs.get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "?"), exception,
        exc_info=True,
    )
