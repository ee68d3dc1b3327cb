import os

import sentry_sdk
from celery import Celery
from sentry_sdk.integrations.celery import CeleryIntegration

from grocer.version import get_grocer_version

SENTRY_BACKEND_DSN = os.environ.get("SENTRY_BACKEND_DSN")

if SENTRY_BACKEND_DSN:
    sentry_sdk.init(
        SENTRY_BACKEND_DSN,
        environment=os.environ.get("GROCER_ENVIRONMENT"),
        release=get_grocer_version(),
        integrations=[CeleryIntegration()],
        traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0")),
    )

app = Celery("grocer")

# Every Celery setting lives in the Django settings with a CELERY_ prefix
app.config_from_object("django.conf:settings", namespace="CELERY")

# Imports run on threads of the web process, so only grocer registers tasks
app.autodiscover_tasks()
