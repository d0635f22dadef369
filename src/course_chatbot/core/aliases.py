from __future__ import annotations

from typing import Dict, List

from course_chatbot.core.normalizer import normalize, tokenize

# ---------------------------------------------------------------------------
# Subject abbreviations people type in chat, mapped to the phrases that appear
# in course titles. Keys are already normalized. "it" is deliberately absent:
# it is far more often a pronoun than "information technology".
# ---------------------------------------------------------------------------

ALIASES: Dict[str, List[str]] = {
    "cs": ["computer science", "computing"],
    "ai": ["artificial intelligence"],
    "ml": ["machine learning"],
    "ds": ["data science"],
    "ict": ["information communication technology"],
    "se": ["software engineering"],
    "ee": ["electrical engineering", "electronic engineering"],
    "mech": ["mechanical engineering"],
    "civil": ["civil engineering"],
    "eng": ["engineering"],
    "biz": ["business"],
    "mgmt": ["management"],
    "hr": ["human resources", "human resource management"],
    "econ": ["economics"],
    "fin": ["finance"],
    "acc": ["accounting"],
    "psych": ["psychology"],
    "maths": ["mathematics"],
    "math": ["mathematics"],
    "bio": ["biology", "biological sciences"],
    "chem": ["chemistry"],
    "phys": ["physics"],
    "pharm": ["pharmacy"],
    "ir": ["international relations"],
    "pgce": ["postgraduate certificate in education"],
}

# Generic request words that never help retrieval
STOPWORDS = frozenset(
    {
        "course", "courses", "programme", "programmes", "program", "programs",
        "please", "find", "show", "list", "give", "tell", "want", "need", "looking",
        "search", "me", "my", "any", "some", "all", "can", "could", "would", "you",
        "is", "are", "there", "what", "which", "about", "available", "options",
        "option", "the", "and", "or", "of", "in", "on", "for", "at", "to", "with",
        "do", "does", "have", "has", "that", "this", "from", "by", "an",
        "start", "starts", "starting", "begin", "begins", "intake",
    }
)


def expand_query(raw: str) -> List[str]:
    """
    Turn a free-text question into the ordered, de-duplicated token list
    used for retrieval and as the query-cache key.

      "find cs courses please" -> ["cs", "computer", "science", "computing"]
    """
    out: List[str] = []
    seen = set()

    def _add(tok: str) -> None:
        if tok not in seen:
            seen.add(tok)
            out.append(tok)

    for tok in tokenize(normalize(raw)):
        if tok in STOPWORDS:
            continue
        _add(tok)
        for phrase in ALIASES.get(tok, ()):
            for word in tokenize(normalize(phrase)):
                _add(word)
    return out


def _multiword_phrases() -> Dict[str, List[str]]:
    phrases: Dict[str, List[str]] = {}
    for key, synonyms in ALIASES.items():
        for phrase in synonyms:
            norm = normalize(phrase)
            if " " in norm:
                phrases.setdefault(norm, []).append(key)
    return phrases


_PHRASE_TAGS = _multiword_phrases()


def phrase_tags(blob: str) -> List[str]:
    """
    Short alias keys whose multi-word phrase occurs (on word boundaries) in a
    normalized record blob. Indexed alongside the blob's own tokens so that
    "cs" finds records titled "Computer Science".
    """
    if not blob:
        return []
    padded = f" {blob} "
    tags: List[str] = []
    for phrase, keys in _PHRASE_TAGS.items():
        if f" {phrase} " in padded:
            for key in keys:
                if key not in tags:
                    tags.append(key)
    return tags
