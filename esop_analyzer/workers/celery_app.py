# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │(producer)│     │(broker)│    │  (consumer)  │     │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ──────────┘                                    └── db 1
#
# Job progress is tracked in the processing_jobs table, not in the result
# backend; the backend only keeps task return values for debugging.
#
# Celery beat runs cleanup_old_jobs once a day.
# =============================================================================

from celery import Celery
from celery.schedules import crontab

from esop_analyzer.config import settings

celery_app = Celery(
    "esop_analyzer.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed worker's task is re-queued.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Processing runs parsing, embeddings and ~20 LLM calls per report.
    task_soft_time_limit=900,
    task_time_limit=1200,

    # --- Results ---
    result_expires=3600,

    include=["esop_analyzer.workers.tasks"],

    # --- Periodic Tasks ---
    beat_schedule={
        "cleanup-old-jobs": {
            "task": "cleanup_old_jobs",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)
