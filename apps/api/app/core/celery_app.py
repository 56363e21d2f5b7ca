from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "crm_pipeline_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.crm.tasks"],
)
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
