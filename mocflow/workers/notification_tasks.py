"""Celery tasks for notification delivery.

Used when ``notification_dispatch`` is set to ``celery``: the workflow
service enqueues the planned notifications after its commit and a worker
writes them to the inbox.
"""

from typing import Any, Dict, List
import logging

from celery import Celery, shared_task

from mocflow.core.config import get_settings
from mocflow.db.session import get_session_factory, session_scope
from mocflow.services.notifications import NotificationRequest, NotificationService

logger = logging.getLogger(__name__)
settings = get_settings()

# Initialize Celery
celery_app = Celery(
    'mocflow',
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_routes={
        'mocflow.workers.notification_tasks.deliver_notifications': {'queue': 'notifications'},
    },
    task_default_queue='default',
)


@shared_task(bind=True)
def deliver_notifications(self, payloads: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Write queued notifications to the inbox.

    Args:
        payloads: Serialized NotificationRequest dicts

    Returns:
        Counts of delivered and failed notifications
    """
    delivered = 0
    failed = 0
    with session_scope(get_session_factory()) as db:
        service = NotificationService(db)
        for payload in payloads:
            try:
                service.create_notification(NotificationRequest.from_payload(payload))
                delivered += 1
            except Exception:
                db.rollback()
                failed += 1
                logger.exception(f"Failed to deliver notification to {payload.get('recipient_id')}")

    logger.info(f"[{self.request.id}] Delivered {delivered} notifications ({failed} failed)")
    return {"delivered": delivered, "failed": failed}
