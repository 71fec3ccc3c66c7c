import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import SLOT_MINUTES
from models import SlotRead

logger = logging.getLogger(__name__)

EVENT_TITLE = "Presentatie Sectorwerkstuk"
EVENT_DESCRIPTION = "Presentatie van je sectorwerkstuk."
EVENT_LOCATION = "School"


def _tz(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone '%s', writing calendar times in UTC", name)
        return timezone.utc


def _stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def build_ics(slot: SlotRead, tz_name: str = "Europe/Amsterdam", now: datetime = None) -> str:
    """Renders a single-event iCalendar document for a booked slot."""
    start = datetime.combine(slot.date, slot.time, tzinfo=_tz(tz_name))
    end = start + timedelta(minutes=SLOT_MINUTES)
    now = now or datetime.now(timezone.utc)

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Sectorwerkstuk//Planning//NL",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:slot-{slot.id}@sectorwerkstuk.nl",
        f"DTSTAMP:{_stamp(now)}",
        f"DTSTART:{_stamp(start)}",
        f"DTEND:{_stamp(end)}",
        f"SUMMARY:{_escape(EVENT_TITLE)}",
        f"DESCRIPTION:{_escape(EVENT_DESCRIPTION)}",
        f"LOCATION:{_escape(EVENT_LOCATION)}",
        "STATUS:CONFIRMED",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"
