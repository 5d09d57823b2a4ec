"""Resolve Spanish date and time expressions ("el jueves a las 4", "mañana en la tarde")."""

import re
import unicodedata
from datetime import date, time, timedelta
from typing import Optional

WEEKDAYS = {
    "lunes": 0,
    "martes": 1,
    "miercoles": 2,
    "jueves": 3,
    "viernes": 4,
    "sabado": 5,
    "domingo": 6,
}

MONTHS = {
    "enero": 1, "febrero": 2, "marzo": 3, "abril": 4, "mayo": 5, "junio": 6,
    "julio": 7, "agosto": 8, "septiembre": 9, "setiembre": 9, "octubre": 10,
    "noviembre": 11, "diciembre": 12,
}

HOUR_WORDS = {
    "una": 1, "dos": 2, "tres": 3, "cuatro": 4, "cinco": 5, "seis": 6,
    "siete": 7, "ocho": 8, "nueve": 9, "diez": 10, "once": 11, "doce": 12,
}

_HOUR = r"(\d{1,2}|" + "|".join(HOUR_WORDS) + r")"
_EXPLICIT_TIME = re.compile(
    r"\b(?:a las|a la|las|la)\s+" + _HOUR +
    r"(?::(\d{2})|\s+y\s+(media|cuarto))?"
    r"\s*(am|pm|a\.m\.|p\.m\.|de la manana|de la tarde|de la noche)?"
)
_CLOCK_TIME = re.compile(r"\b(\d{1,2}):(\d{2})\s*(am|pm|a\.m\.|p\.m\.)?")
_SUFFIX_TIME = re.compile(r"\b(\d{1,2})\s*(am|pm|a\.m\.|p\.m\.)")
_DAY_OF_MONTH = re.compile(r"\b(\d{1,2})\s+de\s+(" + "|".join(MONTHS) + r")\b")
_PERIODS = (
    (re.compile(r"\b(?:en|por) la tarde\b"), time(15, 0)),
    (re.compile(r"\b(?:en|por) la noche\b"), time(19, 0)),
    (re.compile(r"\b(?:en|por) la manana\b|\btemprano\b"), time(10, 0)),
    (re.compile(r"\bmediodia\b"), time(12, 0)),
)


def fold(text: str) -> str:
    """Lowercase and strip accents so 'Miércoles' matches 'miercoles'."""
    decomposed = unicodedata.normalize("NFKD", (text or "").lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def parse_relative_date(text: str, today: date) -> Optional[date]:
    t = fold(text)
    if "pasado manana" in t:
        return today + timedelta(days=2)
    # "mañana" as a day, not "en la mañana"
    if re.search(r"(?<!la )\bmanana\b", t):
        return today + timedelta(days=1)
    if re.search(r"\bhoy\b", t):
        return today

    match = _DAY_OF_MONTH.search(t)
    if match:
        day, month = int(match.group(1)), MONTHS[match.group(2)]
        try:
            candidate = date(today.year, month, day)
        except ValueError:
            return None
        if candidate < today:
            try:
                candidate = date(today.year + 1, month, day)
            except ValueError:
                return None
        return candidate

    match = re.search(r"\b(" + "|".join(WEEKDAYS) + r")\b", t)
    if match:
        days_ahead = (WEEKDAYS[match.group(1)] - today.weekday()) % 7
        return today + timedelta(days=days_ahead or 7)
    return None


def _to_24h(hour: int, marker: Optional[str]) -> int:
    marker = (marker or "").replace(".", "")
    if marker in ("pm", "de la tarde", "de la noche") and hour < 12:
        return hour + 12
    if marker in ("am", "de la manana") and hour == 12:
        return 0
    if not marker and hour < 8:
        # Nobody books a site visit at 4 a.m.
        return hour + 12
    return hour


def parse_relative_time(text: str) -> Optional[time]:
    t = fold(text)
    hour = minute = None
    marker = None

    match = _EXPLICIT_TIME.search(t)
    if match:
        raw_hour = match.group(1)
        hour = int(raw_hour) if raw_hour.isdigit() else HOUR_WORDS[raw_hour]
        if match.group(2):
            minute = int(match.group(2))
        elif match.group(3):
            minute = 30 if match.group(3) == "media" else 15
        marker = match.group(4)
    else:
        match = _CLOCK_TIME.search(t)
        if match:
            hour, minute, marker = int(match.group(1)), int(match.group(2)), match.group(3)
        else:
            match = _SUFFIX_TIME.search(t)
            if match:
                hour, marker = int(match.group(1)), match.group(2)

    if hour is not None:
        if marker is None:
            for pattern, period in _PERIODS[:3]:
                if pattern.search(t):
                    marker = {15: "de la tarde", 19: "de la noche", 10: "de la manana"}[period.hour]
                    break
        hour = _to_24h(hour, marker)
        minute = minute or 0
        if 0 <= hour < 24 and 0 <= minute < 60:
            return time(hour, minute)
        return None

    for pattern, period in _PERIODS:
        if pattern.search(t):
            return period
    return None
