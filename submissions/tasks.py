"""
Celery tasks for submissions app.

Post-commit realtime notification of form owners.
"""

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings
import logging

logger = logging.getLogger(__name__)


@shared_task(
    name='submissions.tasks.notify_form_owner',
    soft_time_limit=settings.FORMS_NOTIFICATION_TASK_TIME_LIMIT,
    time_limit=settings.FORMS_NOTIFICATION_TASK_TIME_LIMIT + 5,
    ignore_result=True,
)
def notify_form_owner(owner_id, payload):
    """
    Push a notification to the form owner.
    Failures are logged and dropped; the submission is already stored.
    """
    from submissions.notifications import get_notifier

    try:
        get_notifier().notify(owner_id, payload)
    except SoftTimeLimitExceeded:
        logger.error(f"Realtime notification to user {owner_id} exceeded its time limit")
        return {'notified': False}
    except Exception as e:
        logger.error(f"Failed to send realtime notification to user {owner_id}: {str(e)}")
        return {'notified': False}

    return {'notified': True}
