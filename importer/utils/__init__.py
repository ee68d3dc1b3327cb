import datetime
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

CENTS = Decimal("0.01")


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[datetime.date]:
    """
    Parse a ``YYYY-MM-DD`` cell. Empty or unparsable values become None
    rather than an error: spreadsheets are full of half-filled date columns.
    """
    if isinstance(value, datetime.date):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def to_money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, ValueError):
        return None
