import tempfile

from .settings_template import *  # NOQA ignore=F405
from .settings_template import LOGGING, MEDIA_URL, STORAGES

DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

ALLOWED_HOSTS = ["127.0.0.1", "0.0.0.0", "testserver"]  # nosec

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

MEDIA_ROOT = tempfile.mkdtemp(prefix="grocer-test-media-")

for _name in ("products", "orders", "promotions"):
    STORAGES[_name] = {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
        "OPTIONS": {
            "location": f"{MEDIA_ROOT}/{_name}",
            "base_url": f"{MEDIA_URL}{_name}/",
        },
    }

LOGGING["handlers"] = {
    "stream": {
        "class": "logging.StreamHandler",
        "level": "WARNING",
        "formatter": "short",
    },
    "structlog_console": {
        "class": "logging.StreamHandler",
        "level": "WARNING",
        "formatter": "structlog_console",
    },
}
LOGGING["loggers"] = {
    "django": {"handlers": ["stream"], "level": "WARNING"},
    "celery": {"handlers": ["stream"], "level": "WARNING"},
    "grocer": {"handlers": ["stream"], "level": "INFO"},
    "importer": {"handlers": ["stream"], "level": "INFO"},
    "structlog": {"handlers": ["structlog_console"], "level": "INFO"},
    "django_structlog": {"handlers": ["structlog_console"], "level": "WARNING"},
}

IMPORT_JOB_WATCHDOG_SECONDS = 0
