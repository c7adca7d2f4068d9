import logging
from typing import Any

from celery import Celery

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger("app.tasks")

celery_app = Celery("field_service_automation", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "automation-resume-continuations": {
        "task": "app.tasks.resume_automation_continuations",
        "schedule": float(settings.automation_resume_interval_seconds),
    },
    "automation-process-follow-up-sequences": {
        "task": "app.tasks.process_follow_up_sequences",
        "schedule": float(settings.automation_resume_interval_seconds),
    },
}


@celery_app.task(name="app.tasks.evaluate_automation_event")
def evaluate_automation_event_task(envelope: dict[str, Any]) -> list[str]:
    from app.automation.adapter import MalformedEventError
    from app.automation.engine import automation_engine
    from app.core.database import worker_session

    with worker_session() as session:
        try:
            records = automation_engine.evaluate_envelope(session, envelope)
        except MalformedEventError as exc:
            logger.warning("automation_event_rejected", extra={"reason": ", ".join(exc.missing)})
            return []
    return [str(record.id) for record in records]


@celery_app.task(name="app.tasks.resume_automation_continuations")
def resume_automation_continuations_task() -> int:
    from app.automation.engine import automation_engine
    from app.core.database import worker_session

    with worker_session() as session:
        records = automation_engine.scheduler.resume_due(session)
    return len(records)


@celery_app.task(name="app.tasks.process_follow_up_sequences")
def process_follow_up_sequences_task() -> int:
    from app.automation.sequences import follow_up_sequence_service
    from app.core.database import worker_session

    with worker_session() as session:
        sequences = follow_up_sequence_service.process_due(session)
    return len(sequences)
