"""Normalisation helpers for WhatsApp contact identifiers."""
from __future__ import annotations

import logging
import re
from typing import Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = "55"

_WHATSAPP_SUFFIXES = re.compile(r"@(s\.whatsapp\.net|lid|c\.us|g\.us)", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")


def _strip(value: str) -> str:
    return _NON_DIGITS.sub("", _WHATSAPP_SUFFIXES.sub("", value))


def normalize_phone(phone: Optional[str]) -> str:
    """Return ``phone`` in E.164 digits, or an empty string when it is not a phone.

    Local Brazilian numbers (10 or 11 digits, DDD included) receive the ``55``
    country code. The mobile ninth digit is preserved. Group and list
    identifiers are rejected.
    """

    if not phone or not isinstance(phone, str):
        return ""

    digits = _strip(phone)
    if len(digits) < 10:
        LOGGER.debug("Rejecting phone %r: too short", phone)
        return ""
    if len(digits) > 13:
        LOGGER.debug("Rejecting phone %r: group/list identifier or too long", phone)
        return ""

    if len(digits) in (10, 11):
        digits = DEFAULT_COUNTRY_CODE + digits
    return digits


def contact_key(contact: Optional[str]) -> str:
    """Key used for lead state: E.164 digits when ``contact`` is a phone, else the raw identifier."""

    return normalize_phone(contact) or str(contact or "").strip()


def normalize_contact_id(contact_id: Optional[str]) -> str:
    """Key used by the contact lock.

    Leading zeros are dropped before the country code is applied, and
    identifiers without digits fall back to the stripped raw value.
    """

    if not contact_id:
        return ""
    digits = _strip(str(contact_id)).lstrip("0")
    if len(digits) in (10, 11):
        digits = DEFAULT_COUNTRY_CODE + digits
    return digits or str(contact_id).strip()
