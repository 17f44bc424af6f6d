"""
Celery configuration for the forms platform.

This module configures Celery for background dispatch of submission
notifications and webhooks.
"""

import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('forms_platform')

# Load configuration from Django settings with CELERY_ prefix
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks in all installed apps
app.autodiscover_tasks()

# Celery Beat Schedule - Periodic Tasks
app.conf.beat_schedule = {
    'prune-webhook-deliveries-weekly': {
        'task': 'webhooks.tasks.prune_webhook_deliveries',
        'schedule': crontab(day_of_week=0, hour=4, minute=0),  # Sunday at 4 AM
    },
}

# Celery Configuration
app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    # Dispatch tasks carry their own shorter limits
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)
