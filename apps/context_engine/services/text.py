"""Text normalisation helpers shared by the cache, the generator and content rendering."""

import hashlib
import math
import re

_WS = re.compile(r"\s+")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

CHARS_PER_TOKEN = 4
ELLIPSIS = "..."


def normalize_query(q: str) -> str:
    """Trim, collapse whitespace, lowercase."""
    if not q:
        return ""
    return " ".join(_WS.split(q.strip().lower()))


def compute_query_hash(normalized_query: str) -> str:
    """SHA256 of normalized query, first 16 hex chars."""
    return hashlib.sha256(normalized_query.encode("utf-8")).hexdigest()[:16]


def clean_text(text: str) -> str:
    """Strip control characters and collapse whitespace (newlines included)."""
    if not text:
        return ""
    return _WS.sub(" ", _CONTROL.sub("", text)).strip()


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~ 4 characters of English text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
    """Deterministically cut text to fit max_tokens.

    Keeps 90% of the character budget, backs off to the last space when it is
    within the final 20% of the cut, and appends '...'. Same input, same output.
    """
    if not text:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text
    target = int(max_tokens * CHARS_PER_TOKEN * 0.9)
    truncated = text[:target]
    last_space = truncated.rfind(" ")
    if last_space > target * 0.8:
        return truncated[:last_space] + ELLIPSIS
    return truncated + ELLIPSIS


def make_snippet(content: str, query: str, max_length: int) -> str:
    """Window around the first occurrence of query, at most max_length chars including any "..." markers."""
    if len(content) <= max_length:
        return content
    if max_length <= 2 * len(ELLIPSIS):
        return content[:max_length]
    idx = content.lower().find((query or "").strip().lower()) if query and query.strip() else -1
    if idx == -1:
        return content[: max_length - len(ELLIPSIS)] + ELLIPSIS
    width = max_length - 2 * len(ELLIPSIS)
    start = max(0, idx - width // 2)
    end = min(len(content), start + width)
    snippet = content[start:end]
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(content):
        snippet = snippet + ELLIPSIS
    return snippet
