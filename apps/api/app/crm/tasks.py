from __future__ import annotations

import logging
import uuid

from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.crm.service import RescoreJobRunner


logger = logging.getLogger("app.crm.jobs")
runner = RescoreJobRunner()


@celery_app.task(name="app.crm.tasks.rescore_all")
def rescore_all(job_id: str) -> str:
    session = SessionLocal()
    try:
        job = runner.run_rescore_job(session, uuid.UUID(job_id))
        return job.status
    finally:
        session.close()


def dispatch_rescore(job_id: uuid.UUID) -> None:
    rescore_all.delay(str(job_id))
    logger.info("job.dispatched", extra={"job_id": str(job_id), "job_type": "RESCORE_ALL"})
