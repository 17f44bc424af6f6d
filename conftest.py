import pytest
from django.core.cache import cache

from config.celery import app as celery_app


@pytest.fixture(autouse=True)
def isolated_side_effects(settings):
    """Blobs in memory, eager tasks and an empty cache for every test"""
    settings.STORAGES = {
        'default': {'BACKEND': 'django.core.files.storage.InMemoryStorage'},
        'staticfiles': {'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage'},
    }
    settings.WEBHOOK_RESOLVE_HOSTNAMES = False
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = False
    cache.clear()
    yield
    cache.clear()
