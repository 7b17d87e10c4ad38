"""
Test settings for PARCELFLYTE.

SQLite in-memory database, local-memory cache, eager Celery.
"""

from .settings import *  # noqa: F401,F403

DEBUG = False

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    }
}

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

# Build the test schema straight from the models
MIGRATION_MODULES = {
    app: None
    for app in ('auth', 'contenttypes', 'sessions', 'core', 'logistics', 'finance')
}

LOGGING['root']['level'] = 'WARNING'  # noqa: F405
