"""
Helpers for the display-string status fields.

Statuses are stored as VARCHAR(50) holding the display value
(e.g. "Out for Delivery") and validated against str Enums at the API
boundary. Input is accepted case-insensitively and with a few aliases
used by the driver app.
"""

from enum import Enum
from typing import Dict, Optional, Type, TypeVar

from fulfillment.models.delivery import DeliveryStatus


T = TypeVar('T', bound=Enum)


DELIVERY_STATUS_ALIASES: Dict[str, str] = {
    "on the way": "Out for Delivery",
    "in transit": "Out for Delivery",
    "out_for_delivery": "Out for Delivery",
}


def match_enum_value(enum_class: Type[T], value: Optional[str]) -> Optional[str]:
    """
    Case-insensitive lookup of ``value`` among ``enum_class`` values.

    Returns the canonical display value or None when nothing matches.
    """
    if value is None:
        return None
    needle = " ".join(str(value).split()).lower()
    for member in enum_class:
        if member.value.lower() == needle:
            return member.value
    return None


def normalize_delivery_status(value: Optional[str]) -> Optional[str]:
    """Map driver-app spellings ("on the way", "DELIVERED") to stored values."""
    if value is None:
        return None
    key = " ".join(str(value).split()).lower()
    alias = DELIVERY_STATUS_ALIASES.get(key)
    if alias:
        return alias
    return match_enum_value(DeliveryStatus, key)
