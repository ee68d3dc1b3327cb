import os

from .settings_template import *  # NOQA ignore=F405
from .settings_template import LOGGING, STORAGES

LOGGING["handlers"]["stream"]["level"] = "INFO"
LOGGING["handlers"]["file"]["level"] = "INFO"
LOGGING["handlers"]["celery"]["level"] = "INFO"
LOGGING["loggers"]["django"]["level"] = "INFO"
LOGGING["loggers"]["celery"]["level"] = "INFO"

SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

CSRF_COOKIE_SECURE = True

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", CELERY_BROKER_URL)  # NOQA F405

S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME")

AWS_STORAGE_BUCKET_NAME = S3_BUCKET_NAME
AWS_DEFAULT_ACL = None  # Don't set an ACL on the files, inherit the bucket ACLs
AWS_QUERYSTRING_AUTH = False

# Product images and order snapshots share a bucket under separate prefixes.
# Order snapshot names embed the order id, so overwriting is never ambiguous.
for _name, _backend in (
    ("products", "storages.backends.s3boto3.S3Boto3Storage"),
    ("orders", "grocer.storage_backends.OverwriteS3Boto3Storage"),
    ("promotions", "storages.backends.s3boto3.S3Boto3Storage"),
):
    STORAGES[_name] = {
        "BACKEND": _backend,
        "OPTIONS": {"bucket_name": S3_BUCKET_NAME, "location": _name},
    }

MEDIA_URL = "https://%s.s3.amazonaws.com/" % S3_BUCKET_NAME
