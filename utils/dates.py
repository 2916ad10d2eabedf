"""
Locale-aware date formatting for notification mail.

Only the patterns the mail templates need are supported:
  pt  →  "05 de março, às 9:30h"
  en  →  "March 5, at 9:30 AM"
"""
from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MONTHS = {
    "pt": [
        "janeiro", "fevereiro", "março", "abril", "maio", "junho",
        "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
    ],
    "en": [
        "January", "February", "March", "April", "May", "June",
        "July", "August", "September", "October", "November", "December",
    ],
}

def normalize_locale(locale: str, default: str = "pt") -> str:
    """'pt-BR' / 'pt_BR' → 'pt'; unknown locales fall back to default."""
    lang = (locale or "").replace("_", "-").split("-")[0].lower()
    if lang in MONTHS:
        return lang
    return default if default in MONTHS else "pt"


def to_zone(value: datetime, tz_name: str) -> datetime:
    """Convert an instant to the named timezone. Naive values are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    return value.astimezone(zone)


def format_meetup_date(value: datetime, locale: str, tz_name: str = "UTC") -> str:
    local = to_zone(value, tz_name)
    lang = normalize_locale(locale)
    month = MONTHS[lang][local.month - 1]
    if lang == "pt":
        return f"{local.day:02d} de {month}, às {local.hour}:{local.minute:02d}h"
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{month} {local.day}, at {hour}:{local.minute:02d} {suffix}"
