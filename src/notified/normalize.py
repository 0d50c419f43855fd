from __future__ import annotations

import re

_WORD = re.compile(r"[a-zA-Z]+")
_SOURCE_SUFFIX = re.compile(r"\s*(news|sport|sports|india|world|tech|entertainment)\s*$")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "dare",
        "to", "of", "in", "for", "on", "with", "at", "by", "from", "as",
        "into", "through", "during", "before", "after", "above", "below",
        "between", "under", "again", "further", "then", "once", "here",
        "there", "when", "where", "why", "how", "all", "each", "few", "more",
        "most", "other", "some", "such", "no", "nor", "not", "only", "own",
        "same", "so", "than", "too", "very", "just", "and", "but", "if", "or",
        "because", "until", "while", "this", "that", "these", "those", "what",
        "which", "who", "whom", "its", "it", "he", "she", "they", "them",
        "his", "her", "their", "my", "your", "our", "says", "said", "new",
        "news", "latest", "today", "now", "get", "got", "make", "made",
    }
)


def extract_keywords(text: str | None) -> list[str]:
    if not text:
        return []
    seen: dict[str, None] = {}
    for match in _WORD.finditer(text.lower()):
        word = match.group()
        if len(word) <= 2 or word in STOP_WORDS:
            continue
        seen.setdefault(word, None)
    return list(seen)


def normalize_source(source: str | None) -> str:
    """Collapse source variants: "BBC Sport" and "BBC News" both become "bbc"."""
    if source is None:
        return "unknown"
    lowered = source.lower().strip()
    normalized = _SOURCE_SUFFIX.sub("", lowered).strip()
    return normalized or source.lower()


def normalize_category(category: str | None) -> str:
    return (category or "").strip().upper()
