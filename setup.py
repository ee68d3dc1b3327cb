#!/usr/bin/env python
import re
from pathlib import Path

from setuptools import find_packages, setup

VERSION = ".".join(
    re.search(
        r"^VERSION = \((\d+), (\d+), (\d+)\)",
        Path("grocer/version.py").read_text(),
        re.MULTILINE,
    ).groups()
)
INSTALL_REQUIREMENTS = [
    "boto3",
    "celery[redis]>=5.3",
    "Django>=5.1",
    "django-ninja>=1.1",
    "django-storages[s3]>=1.14",
    "django-structlog>=8.0",
    "more-itertools",
    "Pillow",
    "psycopg[binary]>=3.1",
    "pydantic>=2",
    "requests",
    "sentry-sdk>=2",
    "structlog>=24.1",
]
TEST_REQUIREMENTS = ["pytest", "pytest-django"]
SCRIPTS = ["manage.py"]
DESCRIPTION = "Multi-tenant grocery catalog, import and ordering backend"
CLASSIFIERS = """\
Environment :: Web Environment
Framework :: Django
Framework :: Django :: 5.1
Programming Language :: Python
Programming Language :: Python :: 3
""".splitlines()

with open("README.md", "r") as f:
    LONG_DESCRIPTION = f.read()


setup(
    name="grocer",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["*.tests", "*.tests.*"]),
    include_package_data=True,
    scripts=SCRIPTS,
    python_requires=">=3.10",
    install_requires=INSTALL_REQUIREMENTS,
    extras_require={"test": TEST_REQUIREMENTS},
    classifiers=CLASSIFIERS,
)
