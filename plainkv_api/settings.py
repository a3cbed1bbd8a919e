"""
Django settings for the PlainKV REST API.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'plainkv-insecure-development-key')

DEBUG = os.environ.get('DJANGO_DEBUG', '0') == '1'

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',')

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'api',
]

MIDDLEWARE = [
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'plainkv_api.urls'

WSGI_APPLICATION = 'plainkv_api.wsgi.application'

# The key-value store manages its own SQLite file; Django needs no database.
DATABASES = {}

USE_TZ = True

# Values may be up to 16 MiB; larger bodies reach the store and get a 413.
DATA_UPLOAD_MAX_MEMORY_SIZE = 32 * 1024 * 1024

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'DEFAULT_RENDERER_CLASSES': ['rest_framework.renderers.JSONRenderer'],
    'DEFAULT_PARSER_CLASSES': ['rest_framework.parsers.JSONParser'],
    'UNAUTHENTICATED_USER': None,
}

# PlainKV store
PLAINKV_DSN = os.environ.get(
    'PLAINKV_DSN',
    f"{BASE_DIR / 'plainkv.db'}?_pragma=journal_mode(WAL)&_pragma=busy_timeout(5000)",
)
PLAINKV_TABLE_NAME = os.environ.get('PLAINKV_TABLE_NAME', 'KeyValueTBL')
PLAINKV_POOL_SIZE = int(os.environ.get('PLAINKV_POOL_SIZE', '10'))
PLAINKV_MAX_STORES = int(os.environ.get('PLAINKV_MAX_STORES', '64'))

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {'format': '%(asctime)s %(levelname)s %(name)s: %(message)s'},
    },
    'handlers': {
        'console': {'class': 'logging.StreamHandler', 'formatter': 'simple'},
    },
    'loggers': {
        'plainkv': {
            'handlers': ['console'],
            'level': os.environ.get('PLAINKV_LOG_LEVEL', 'INFO'),
        },
        'api': {
            'handlers': ['console'],
            'level': os.environ.get('PLAINKV_LOG_LEVEL', 'INFO'),
        },
    },
}
