from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from course_chatbot.config import DEFAULT_MAX_RESULTS
from course_chatbot.core.aliases import STOPWORDS, expand_query
from course_chatbot.core.catalog_index import CatalogIndex, get_default_index
from course_chatbot.core.context import summarize_rows
from course_chatbot.core.flattener import Record
from course_chatbot.core.normalizer import normalize, tokenize

logger = logging.getLogger(__name__)


class QueryEngineError(Exception):
    """Custom exception for query engine failures."""


class Intent(str, Enum):
    LIST = "LIST"
    COUNT = "COUNT"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"
    GENERAL = "GENERAL"


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

_UG_CODES = (
    "bsc", "ba", "beng", "llb", "bmus", "bed", "bachelor", "bachelors",
    "foundation", "hnd", "hnc", "fdsc", "fda", "undergraduate",
)
_PG_CODES = (
    "msc", "ma", "mba", "mres", "mphil", "llm", "meng", "mfa", "phd", "dphil",
    "pgcert", "pgdip", "pgce", "master", "masters", "doctorate", "postgraduate",
)

# level keyword in a question -> qualification tokens that satisfy it
LEVEL_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "undergraduate": _UG_CODES,
    "ug": _UG_CODES,
    "bachelor": _UG_CODES,
    "bachelors": _UG_CODES,
    "postgraduate": _PG_CODES,
    "pg": _PG_CODES,
    "master": _PG_CODES,
    "masters": _PG_CODES,
    "msc": ("msc",),
    "ma": ("ma",),
    "mba": ("mba",),
    "mres": ("mres",),
    "llm": ("llm",),
    "meng": ("meng",),
    "phd": ("phd", "dphil", "doctorate"),
    "doctorate": ("phd", "dphil", "doctorate"),
    "bsc": ("bsc",),
    "ba": ("ba",),
    "beng": ("beng",),
    "llb": ("llb",),
    "hnd": ("hnd",),
    "foundation": ("foundation",),
    "pgce": ("pgce",),
}

MONTHS: Dict[str, str] = {
    "january": "jan", "jan": "jan",
    "february": "feb", "feb": "feb",
    "march": "mar", "mar": "mar",
    "april": "apr", "apr": "apr",
    "may": "may",
    "june": "jun", "jun": "jun",
    "july": "jul", "jul": "jul",
    "august": "aug", "aug": "aug",
    "september": "sep", "sept": "sep", "sep": "sep",
    "october": "oct", "oct": "oct",
    "november": "nov", "nov": "nov",
    "december": "dec", "dec": "dec",
}

DOMAIN_HINTS = frozenset(
    {
        "course", "courses", "degree", "degrees", "programme", "programmes",
        "program", "programs", "university", "universities", "uni", "unis",
        "college", "colleges", "study", "studying", "campus", "campuses",
        "qualification", "qualifications", "diploma", "certificate", "module",
        "modules", "intake", "ucas", "application", "applications", "apply",
        "tuition", "fee", "fees", "hons", "honours", "llb", "llm", "beng",
        "meng", "mres", "mphil",
    }
) | frozenset(LEVEL_KEYWORDS)

# Checked in this order; the first family that matches wins.
_INTENT_PATTERNS: List[Tuple[Intent, "re.Pattern[str]"]] = [
    (Intent.COUNT, re.compile(r"\b(how many|count|number of)\b")),
    (Intent.AVG, re.compile(r"\b(average|mean|avg)\b")),
    (Intent.MIN, re.compile(r"\b(cheapest|lowest|minimum|min|shortest|least expensive)\b")),
    (Intent.MAX, re.compile(r"\b(most expensive|highest|maximum|max|longest|priciest)\b")),
]

# Numeric display fields in priority order, with the words that select them
NUMERIC_FIELDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("fee", (
        "fee", "fees", "cost", "costs", "price", "prices", "tuition", "cheapest",
        "expensive", "priciest", "pay", "afford", "affordable",
    )),
    ("duration_months", (
        "duration", "long", "longest", "shortest", "length", "years", "months", "weeks",
    )),
]

_FIELD_LABELS = {"fee": "fee", "duration_months": "duration (months)"}

_CLAUSE_WORDS = ("in", "on", "for")
_LOCATION_NOISE = frozenset({"the", "a", "an", "me", "us", "please", "now", "students", "student"})

# Month words that are also ordinary English ("may suit me"); these count as
# months only right after a date word or right before a year.
_AMBIGUOUS_MONTHS = frozenset({"may", "mar"})
_MONTH_LEAD_WORDS = frozenset({
    "in", "from", "on", "by", "until", "start", "starts", "starting", "begin", "begins",
    "beginning", "intake", "entry",
})
_YEAR_RE = re.compile(r"^(19|20)\d\d$")

_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


# ---------------------------------------------------------------------------
# Result & filter types
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    intent: Intent
    rows: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None
    value: Optional[float] = None
    field_used: Optional[str] = None
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"intent": self.intent.value, "rows": self.rows}
        if self.count is not None:
            out["count"] = self.count
        if self.value is not None:
            out["value"] = self.value
        if self.field_used is not None:
            out["fieldUsed"] = self.field_used
        out["text"] = self.text
        return out


@dataclass(frozen=True)
class RecordFilter:
    """
    One predicate over a Record's display fields.

    kind:
      - "level":    qualification tokens must include one of `codes`
      - "month":    raw start_month must equal `value`
      - "location": normalized `value` contained in the joined display fields
    """
    kind: str
    value: str
    codes: Tuple[str, ...] = ()

    def matches(self, raw: Dict[str, Any]) -> bool:
        if self.kind == "level":
            quals = set(tokenize(normalize(raw.get("qualification"))))
            return any(code in quals for code in self.codes)
        if self.kind == "month":
            return raw.get("start_month") == self.value
        if self.kind == "location":
            hay = normalize(" ".join(str(v) for v in raw.values() if v))
            return self.value in hay
        raise QueryEngineError(f"Unknown filter kind: {self.kind}")


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_in_scope(text: str) -> bool:
    """
    Binary gate: does the question mention any catalog word?

    Two-letter level codes ("ma", "ba", "pg", "ug") double as state names and
    abbreviations, so on their own they need a second catalog word.
    """
    hits = [tok for tok in tokenize(normalize(text)) if tok in DOMAIN_HINTS]
    return any(len(tok) > 2 for tok in hits) or len(hits) >= 2


def detect_intent(text: str) -> Intent:
    norm = normalize(text)
    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(norm):
            return intent
    return Intent.LIST


def _location_phrase(tokens: List[str]) -> str:
    # last "in/on/for <phrase>" clause that still names something wins
    for i in range(len(tokens) - 2, -1, -1):
        if tokens[i] in _CLAUSE_WORDS:
            words = [
                t for t in tokens[i + 1:]
                if t not in MONTHS
                and t not in DOMAIN_HINTS
                and t not in STOPWORDS
                and t not in _LOCATION_NOISE
            ]
            if words:
                return " ".join(words)
    return ""


def _month_code(tokens: List[str]) -> str:
    """First month named in the question, "" if none."""
    for i, tok in enumerate(tokens):
        if tok not in MONTHS:
            continue
        if tok in _AMBIGUOUS_MONTHS:
            before = tokens[i - 1] if i > 0 else ""
            after = tokens[i + 1] if i + 1 < len(tokens) else ""
            if before not in _MONTH_LEAD_WORDS and not _YEAR_RE.match(after):
                continue
        return MONTHS[tok]
    return ""


def build_filters(text: str) -> List[RecordFilter]:
    """
    Predicates implied by the question, applied with AND:
    location clause first, then level, then start month.
    """
    tokens = normalize(text).split()
    filters: List[RecordFilter] = []

    phrase = _location_phrase(tokens)
    if phrase:
        filters.append(RecordFilter(kind="location", value=phrase))

    for tok in tokens:
        if tok in LEVEL_KEYWORDS:
            filters.append(RecordFilter(kind="level", value=tok, codes=LEVEL_KEYWORDS[tok]))
            break

    month = _month_code(tokens)
    if month:
        filters.append(RecordFilter(kind="month", value=month))

    return filters


def apply_filters(records: Sequence[Record], filters: Sequence[RecordFilter]) -> List[Record]:
    if not filters:
        return list(records)
    return [r for r in records if all(f.matches(r.raw) for f in filters)]


def _retrieval_text(text: str, filters: Sequence[RecordFilter]) -> str:
    """
    The part of the question that should drive retrieval: intent phrases and
    words already handled by filters or field selection are removed.
    """
    norm = normalize(text)
    for _, pattern in _INTENT_PATTERNS:
        norm = pattern.sub(" ", norm)

    consumed = set(MONTHS) | set(DOMAIN_HINTS)
    for _, keywords in NUMERIC_FIELDS:
        consumed.update(keywords)
    for f in filters:
        if f.kind == "location":
            consumed.update(f.value.split())

    return " ".join(t for t in norm.split() if t not in consumed)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Optional[float]:
    """
    First number inside a possibly currency-formatted string.

      "£9000 pcm" -> 9000.0, "£12,500" -> 12500.0, "invalid" -> None
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    m = _NUMBER_RE.search(str(value))
    if not m:
        return None
    try:
        return float(m.group(0).replace(",", ""))
    except ValueError:
        return None


def select_numeric_field(text: str) -> Optional[str]:
    tokens = set(tokenize(normalize(text)))
    for field_name, keywords in NUMERIC_FIELDS:
        if tokens.intersection(keywords):
            return field_name
    return None


def aggregate(records: Sequence[Record], field_name: str, intent: Intent) -> Optional[Tuple[float, List[Record]]]:
    """
    AVG / MIN / MAX over one raw field.

    Records whose value does not parse are left out (not counted as zero).
    Returns (value, contributing records) or None when nothing parses.
    MIN/MAX contributing records are the ones holding the extreme value.
    """
    if intent not in (Intent.AVG, Intent.MIN, Intent.MAX):
        raise QueryEngineError(f"Cannot aggregate with intent {intent}")

    values = pd.Series([parse_numeric(r.raw.get(field_name)) for r in records], dtype="float64")
    parsed = values.dropna()
    if parsed.empty:
        return None

    if intent is Intent.AVG:
        return float(parsed.mean()), [records[i] for i in parsed.index]

    target = parsed.min() if intent is Intent.MIN else parsed.max()
    picked = [records[i] for i in parsed.index[(parsed == target).to_numpy()]]
    return float(target), picked


def _fmt_number(value: float) -> str:
    if float(value).is_integer():
        return f"{value:,.0f}"
    return f"{value:,.2f}"


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def query_dataset(
    text: str,
    max_results: int = DEFAULT_MAX_RESULTS,
    *,
    index: Optional[CatalogIndex] = None,
) -> QueryResult:
    """
    Answer a free-text catalog question.

    Out-of-scope questions return Intent.GENERAL with no rows, which tells
    the conversational layer to use its own open-ended fallback.
    """
    if int(max_results) < 1:
        raise QueryEngineError("max_results must be >= 1")

    if not is_in_scope(text):
        return QueryResult(intent=Intent.GENERAL, rows=[], count=0, text="")

    if index is None:
        index = get_default_index()
    filters = build_filters(text)
    intent = detect_intent(text)

    tokens = expand_query(_retrieval_text(text, filters))
    if tokens:
        candidates = await index.rank(tokens)
    else:
        await index.build_index()
        candidates = list(index.iter_records())

    matched = apply_filters(candidates, filters)
    logger.info(
        "Query %r -> intent=%s tokens=%s filters=%s candidates=%d matched=%d",
        text, intent.value, tokens, [(f.kind, f.value) for f in filters], len(candidates), len(matched),
    )

    if intent is Intent.COUNT:
        n = len(matched)
        return QueryResult(
            intent=Intent.COUNT,
            rows=[r.public() for r in matched[:max_results]],
            count=n,
            text=f"I found {n} matching course option{'s' if n != 1 else ''}.",
        )

    if intent in (Intent.AVG, Intent.MIN, Intent.MAX):
        field_name = select_numeric_field(text)
        outcome = aggregate(matched, field_name, intent) if field_name else None
        if outcome is not None:
            value, contributing = outcome
            label = {Intent.AVG: "Average", Intent.MIN: "Lowest", Intent.MAX: "Highest"}[intent]
            field_label = _FIELD_LABELS.get(field_name, field_name)
            return QueryResult(
                intent=intent,
                rows=[r.public() for r in contributing[:max_results]],
                count=len(contributing),
                value=value,
                field_used=field_name,
                text=f"{label} {field_label} across {len(contributing)} course option"
                     f"{'s' if len(contributing) != 1 else ''}: {_fmt_number(value)}",
            )
        logger.debug("No numeric field for %r (field=%s); answering as LIST", text, field_name)

    rows = [r.public() for r in matched[:max_results]]
    if not rows:
        return QueryResult(intent=Intent.LIST, rows=[], count=0, text="No matches found.")
    return QueryResult(
        intent=Intent.LIST,
        rows=rows,
        count=len(matched),
        text=summarize_rows(rows, 5),
    )
