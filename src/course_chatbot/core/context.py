from __future__ import annotations

from typing import Any, Dict, List, Sequence

MORE_HINT = 'Reply "more" to see more options.'


def _raw(row: Dict[str, Any]) -> Dict[str, Any]:
    raw = row.get("raw")
    return raw if isinstance(raw, dict) else row


def _row_parts(raw: Dict[str, Any]) -> List[str]:
    title = raw.get("course_title") or "Course"
    parts = [f"{title} ({raw['qualification']})" if raw.get("qualification") else title]
    if raw.get("application_code"):
        parts.append(f"Code: {raw['application_code']}")
    if raw.get("campus"):
        parts.append(f"Campus: {raw['campus']}")
    if raw.get("start_date_raw"):
        parts.append(f"Start: {raw['start_date_raw']}")
    return parts


def summarize_rows(rows: Sequence[Dict[str, Any]], limit: int = 5) -> str:
    """One line per row: "Title (Qualification) | Code: X | Campus: Y | Start: Z"."""
    return "\n".join(" | ".join(_row_parts(_raw(r))) for r in list(rows)[:limit])


def format_course_slice(rows: Sequence[Dict[str, Any]], start: int = 0, size: int = 5, head: str = "") -> str:
    """
    Render one page of rows for a chat reply.

    The conversational layer keeps the rows and the offset between turns and
    calls this again with start += size when the user asks for more.
    """
    page = list(rows)[start:start + size]
    if not page:
        return "No more results."

    blocks: List[str] = []
    for row in page:
        raw = _raw(row)
        lines = [f"*{raw.get('course_title') or 'Course'}*"]
        if raw.get("qualification"):
            lines.append(f"  Qualification: {raw['qualification']}")
        if raw.get("campus"):
            lines.append(f"  Campus: {raw['campus']}")
        if raw.get("start_date_raw"):
            lines.append(f"  Start: {raw['start_date_raw']}")
        if raw.get("application_code"):
            lines.append(f"  Code: {raw['application_code']}")
        blocks.append("\n".join(lines))

    body = "\n\n".join(blocks)
    if head:
        return f"{head}\n\n{body}\n\n{MORE_HINT}"
    return f"{body}\n\n{MORE_HINT}"


def build_rag_context(rows: Sequence[Dict[str, Any]]) -> str:
    """
    Numbered fact lines handed to an LLM collaborator as grounding context.

    The model should only repeat details that appear here.
    """
    lines: List[str] = []
    for i, row in enumerate(rows, start=1):
        raw = _raw(row)
        parts = [f"#{i} {raw.get('course_title') or 'Course'}"]
        if raw.get("qualification"):
            parts.append(f"Qualification: {raw['qualification']}")
        if raw.get("provider"):
            parts.append(f"Provider: {raw['provider']}")
        if raw.get("application_code"):
            parts.append(f"Code: {raw['application_code']}")
        if raw.get("campus"):
            parts.append(f"Campus: {raw['campus']}")
        if raw.get("start_date_raw"):
            parts.append(f"Start: {raw['start_date_raw']}")
        lines.append(" | ".join(parts))
    return "\n".join(lines)
