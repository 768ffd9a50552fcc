from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from fulfillment.config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def business_today() -> date:
    """Calendar date at the store, used by the Ready / Out for Delivery date gates."""
    return datetime.now(ZoneInfo(settings.BUSINESS_TIMEZONE)).date()


def is_due(scheduled: date | None) -> bool:
    """True when nothing is scheduled or the scheduled date has arrived."""
    return scheduled is None or scheduled <= business_today()
