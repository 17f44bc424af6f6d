"""
Celery tasks for webhooks app.

Background delivery of submission events and delivery-log housekeeping.
"""

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings
from django.utils import timezone
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


@shared_task(
    name='webhooks.tasks.deliver_webhook',
    soft_time_limit=settings.WEBHOOK_TASK_SOFT_TIME_LIMIT,
    time_limit=settings.WEBHOOK_TASK_TIME_LIMIT,
    ignore_result=True,
)
def deliver_webhook(form_id, event, submission_id, data=None):
    """
    Deliver one submission event to the form's webhook.
    At-most-once: failures are logged and recorded, never retried.
    """
    from formbuilder.models import Form
    from webhooks.dispatcher import WebhookDispatcher
    from webhooks.models import WebhookEvent

    try:
        form = Form.objects.get(pk=form_id)
    except Form.DoesNotExist:
        logger.warning(f"Skipping webhook {event} for missing form {form_id}")
        return {'delivered': False}

    dispatcher = WebhookDispatcher()
    try:
        if event == WebhookEvent.SUBMISSION_DELETED:
            delivered = dispatcher.notify_submission_deleted(form, submission_id)
        elif event == WebhookEvent.SUBMISSION_UPDATED:
            delivered = dispatcher.notify_submission_updated(form, submission_id, data)
        else:
            delivered = dispatcher.notify_submission_created(form, submission_id, data)
    except SoftTimeLimitExceeded:
        logger.error(f"Webhook {event} for form {form_id} exceeded its time limit")
        return {'delivered': False}

    return {'delivered': delivered}


@shared_task(name='webhooks.tasks.prune_webhook_deliveries')
def prune_webhook_deliveries(days=30):
    """
    Delete old delivery log entries.
    Default: entries older than 30 days.
    """
    from webhooks.models import WebhookDelivery

    try:
        cutoff_date = timezone.now() - timedelta(days=days)
        deleted_count, _ = WebhookDelivery.objects.filter(created_at__lt=cutoff_date).delete()

        logger.info(f"Pruned {deleted_count} webhook delivery records")
        return {'deleted_count': deleted_count}

    except Exception as e:
        logger.error(f"Error pruning webhook deliveries: {str(e)}")
        raise
