from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from course_chatbot.core.normalizer import normalize

logger = logging.getLogger(__name__)

# Start dates seen in provider feeds (UK day-first first)
_DATE_FORMATS = (
    "%d/%m/%Y",
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%d-%m-%Y",
    "%d %B %Y",
    "%B %Y",
)

MONTH_CODES = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

# Option/course keys that may carry a fee or price
_FEE_KEYS = ("fee", "fees", "tuitionFee", "price")

# Duration units -> months, so mixed "3 Years" / "18 Months" options compare
_MONTHS_PER_UNIT = {"year": 12.0, "month": 1.0, "week": 12 / 52, "day": 12 / 365}


class MalformedRecordError(Exception):
    """Raised when a provider entry cannot be flattened at all."""


@dataclass
class Record:
    """
    One course option together with its provider/course context.

    `blob` is the normalized search text and is never handed to callers;
    `raw` holds the display fields.
    """
    id: Optional[int]
    blob: str
    raw: Dict[str, str]

    def public(self) -> Dict[str, Any]:
        return {"id": self.id, "raw": dict(self.raw)}


@dataclass
class FlattenStats:
    providers: int = 0
    records: int = 0
    malformed: int = 0
    empty: int = 0
    malformed_samples: List[str] = field(default_factory=list)

    def note_malformed(self, reason: str, keep: int = 5) -> None:
        self.malformed += 1
        if len(self.malformed_samples) < keep:
            self.malformed_samples.append(reason)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _dig(obj: Any, *path: str) -> str:
    """obj["a"]["b"]... as display text, "" when any step is missing."""
    cur = obj
    for key in path:
        if not isinstance(cur, dict):
            return ""
        cur = cur.get(key)
    return _text(cur)


def start_month_code(raw_date: str) -> str:
    """
    3-letter month code for a start date string, "" if it does not parse.

      "01/09/2025" -> "sep"
      "2026-01-12" -> "jan"
    """
    s = (raw_date or "").strip()
    if not s:
        return ""
    for fmt in _DATE_FORMATS:
        try:
            return MONTH_CODES[datetime.strptime(s, fmt).month - 1]
        except ValueError:
            continue
    # ISO timestamps with offsets / fractions: the date part is enough
    try:
        return MONTH_CODES[datetime.strptime(s[:10], "%Y-%m-%d").month - 1]
    except ValueError:
        return ""


def _fee_text(option: Dict[str, Any], course: Dict[str, Any]) -> str:
    for source in (option, course):
        for key in _FEE_KEYS:
            val = source.get(key)
            if isinstance(val, dict):
                val = val.get("amount") or val.get("caption") or val.get("value")
            text = _text(val)
            if text:
                return text
    return ""


def _duration_text(option: Dict[str, Any]) -> str:
    qty = _dig(option, "duration", "quantity")
    unit = _dig(option, "duration", "durationType", "caption")
    return " ".join(p for p in (qty, unit) if p)


def duration_months(quantity: Any, unit: Any) -> str:
    """
    Duration in months as display text, "" when the quantity or unit is unknown.

      (3, "Years") -> "36", (18, "Weeks") -> "4.2"
    """
    try:
        qty = float(_text(quantity))
    except ValueError:
        return ""
    key = _text(unit).lower().rstrip("s")
    factor = _MONTHS_PER_UNIT.get(key)
    if factor is None:
        return ""
    return f"{round(qty * factor, 1):g}"


def _provider_context(provider: Dict[str, Any]) -> List[str]:
    aliases = provider.get("aliases") or []
    if not isinstance(aliases, list):
        aliases = [aliases]
    return [
        _text(provider.get("name")),
        _text(provider.get("institutionCode")),
        *[_text(a) for a in aliases],
        _dig(provider, "address", "line4"),
        _dig(provider, "address", "country", "mappedCaption"),
        _text(provider.get("websiteUrl")),
    ]


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------

def _build_record(
    provider_name: str,
    provider_parts: List[str],
    course: Dict[str, Any],
    option: Dict[str, Any],
) -> Record:
    title = _text(course.get("courseTitle"))
    qualification = (
        _dig(option, "outcomeQualification", "caption")
        or _dig(course, "outcomeQualification", "caption")
    )
    campus = _dig(option, "location", "name")
    start_raw = _dig(option, "startDate", "date")
    study_mode = _dig(option, "studyMode", "mappedCaption")
    duration = _duration_text(option)
    fee = _fee_text(option, course)

    raw = {
        "course_title": title,
        "qualification": qualification,
        "campus": campus,
        "start_date_raw": start_raw,
        "start_month": start_month_code(start_raw),
        "application_code": _text(course.get("applicationCode")),
        "academic_year": _text(course.get("academicYearId")),
        "provider": provider_name,
        "study_mode": study_mode,
        "duration": duration,
        "duration_months": duration_months(
            _dig(option, "duration", "quantity"),
            _dig(option, "duration", "durationType", "caption"),
        ),
        "fee": fee,
    }

    parts = provider_parts + [
        title,
        raw["application_code"],
        raw["academic_year"],
        _dig(course, "routingData", "destination", "caption"),
        _dig(course, "outcomeQualification", "caption"),
        study_mode,
        duration,
        campus,
        start_raw,
        _dig(option, "outcomeQualification", "caption"),
    ]
    blob = normalize(" ".join(p for p in parts if p))
    return Record(id=None, blob=blob, raw=raw)


def flatten_provider(provider: Any, stats: Optional[FlattenStats] = None) -> Iterator[Record]:
    """
    Lazily turn one provider entry into Records (course x delivery option).

    - A course without options yields one Record from a placeholder option.
    - Records whose blob normalizes to "" are dropped (counted as empty).
    - A malformed course or option is skipped and counted; a provider that is
      not an object raises MalformedRecordError.

    Ids are left as None; the index builder assigns them on arrival.
    """
    if stats is None:
        stats = FlattenStats()

    if not isinstance(provider, dict):
        raise MalformedRecordError(f"Provider entry is {type(provider).__name__}, expected object")

    courses = provider.get("courses") or []
    if not isinstance(courses, list):
        raise MalformedRecordError(f"Provider {provider.get('name')!r}: 'courses' is not a list")

    stats.providers += 1
    provider_name = _text(provider.get("name"))
    provider_parts = _provider_context(provider)

    for course in courses:
        if not isinstance(course, dict):
            stats.note_malformed(f"{provider_name}: course entry is {type(course).__name__}")
            continue

        options = course.get("options")
        if options is None or options == []:
            options = [{}]
        elif not isinstance(options, list):
            stats.note_malformed(f"{provider_name}: options of {course.get('courseTitle')!r} is not a list")
            continue

        for option in options:
            if option is None:
                option = {}
            if not isinstance(option, dict):
                stats.note_malformed(f"{provider_name}: option entry is {type(option).__name__}")
                continue

            record = _build_record(provider_name, provider_parts, course, option)
            if not record.blob:
                stats.empty += 1
                continue

            stats.records += 1
            yield record
