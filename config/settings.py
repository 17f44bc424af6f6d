"""
Django settings for the forms platform.

Every deployment knob is read from the environment (a local .env file is
loaded first). Defaults are suitable for development and the test suite.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / '.env')


def env_bool(name, default=False):
    """Read a boolean flag from the environment"""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_int(name, default):
    value = os.getenv(name)
    return int(value) if value else default


# ============================================================================
# Core
# ============================================================================

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-insecure-secret-key-change-me')
DEBUG = env_bool('DJANGO_DEBUG', True)
ALLOWED_HOSTS = [h for h in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',') if h]

INSTALLED_APPS = [
    'unfold',  # must come before django.contrib.admin
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'drf_spectacular',
    'formbuilder',
    'submissions',
    'webhooks',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.locale.LocaleMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# ============================================================================
# Database
# ============================================================================

if os.getenv('DJANGO_DB_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('DJANGO_DB_NAME'),
            'USER': os.getenv('DJANGO_DB_USER', ''),
            'PASSWORD': os.getenv('DJANGO_DB_PASSWORD', ''),
            'HOST': os.getenv('DJANGO_DB_HOST', 'localhost'),
            'PORT': os.getenv('DJANGO_DB_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ============================================================================
# Cache
# ============================================================================

REDIS_URL = os.getenv('REDIS_URL')

if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'forms-platform',
        }
    }

# ============================================================================
# Storage (attachment blob store)
# ============================================================================

STORAGES = {
    'default': {
        'BACKEND': os.getenv('FORMS_STORAGE_BACKEND', 'django.core.files.storage.FileSystemStorage'),
    },
    'staticfiles': {
        'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage',
    },
}

MEDIA_ROOT = os.getenv('DJANGO_MEDIA_ROOT', str(BASE_DIR / 'media'))
MEDIA_URL = '/media/'
STATIC_URL = '/static/'

# ============================================================================
# Internationalization
# ============================================================================

LANGUAGE_CODE = os.getenv('DJANGO_LANGUAGE_CODE', 'en')
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Catalogs for user-facing validation, eligibility and notification messages
LOCALE_PATHS = [BASE_DIR / 'locale']

# ============================================================================
# REST framework
# ============================================================================

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
}

SPECTACULAR_SETTINGS = {
    'TITLE': 'Forms Platform API',
    'DESCRIPTION': 'Dynamic form submission pipeline',
    'VERSION': '1.0.0',
}

# ============================================================================
# Admin (Unfold)
# ============================================================================

UNFOLD = {
    'SITE_TITLE': 'Forms Platform',
    'SITE_HEADER': 'Forms Platform',
    'DASHBOARD_CALLBACK': 'config.dashboard.dashboard_callback',
}

# ============================================================================
# Celery
# ============================================================================

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL or 'memory://')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', None)
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_TASK_ALWAYS_EAGER', DEBUG)
CELERY_TASK_EAGER_PROPAGATES = False

# ============================================================================
# Forms pipeline
# ============================================================================

# Fernet key used to encrypt webhook secrets at rest
FIELD_ENCRYPTION_KEY = os.getenv(
    'FIELD_ENCRYPTION_KEY',
    'MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=',
)

FORMS_PUBLIC_API_URL = os.getenv('FORMS_PUBLIC_API_URL', 'http://localhost:8000')
FORMS_DEFAULT_LOCALE = os.getenv('FORMS_DEFAULT_LOCALE', 'en')
FORMS_REALTIME_NOTIFIER = os.getenv(
    'FORMS_REALTIME_NOTIFIER', 'submissions.notifications.CacheRealtimeNotifier'
)
FORMS_BLOB_STORE = os.getenv(
    'FORMS_BLOB_STORE', 'submissions.storage.DjangoStorageBlobStore'
)
FORMS_MAX_PATTERN_LENGTH = env_int('FORMS_MAX_PATTERN_LENGTH', 512)
FORMS_MAX_PATTERN_INPUT_LENGTH = env_int('FORMS_MAX_PATTERN_INPUT_LENGTH', 10000)
FORMS_NOTIFICATION_TASK_TIME_LIMIT = env_int('FORMS_NOTIFICATION_TASK_TIME_LIMIT', 30)

WEBHOOK_TIMEOUT_SECONDS = env_int('WEBHOOK_TIMEOUT_SECONDS', 10)
WEBHOOK_USER_AGENT = os.getenv('WEBHOOK_USER_AGENT', 'Forms-Platform-Webhook/1.0')
WEBHOOK_RESOLVE_HOSTNAMES = env_bool('WEBHOOK_RESOLVE_HOSTNAMES', False)
WEBHOOK_TASK_SOFT_TIME_LIMIT = env_int('WEBHOOK_TASK_SOFT_TIME_LIMIT', 15)
WEBHOOK_TASK_TIME_LIMIT = env_int('WEBHOOK_TASK_TIME_LIMIT', 20)

# ============================================================================
# Logging
# ============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.getenv('DJANGO_LOG_LEVEL', 'INFO'),
    },
}
