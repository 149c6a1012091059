"""Text cleaning applied to every content item before it reaches the model.

``sanitize`` is pure: the same input and budget always give the same output,
and it never raises. Steps, in order:

1. Strip HTML markup (script/style bodies dropped) and unescape entities.
2. NFKC-normalize and drop control / zero-width characters.
3. Neutralize prompt-injection sequences (role markers, "ignore previous
   instructions", persona switches, system-prompt extraction).
4. Remove markdown control characters.
5. Collapse whitespace.
6. Truncate to the token budget, keeping the head.
"""

from __future__ import annotations

import html as _html
import math
import re
import unicodedata

from bs4 import BeautifulSoup

TOKENS_PER_WORD = 1.5
FILTERED_MARKER = "(filtered)"

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Chat-template control tokens
    re.compile(r"<\|[^|<>]{0,40}\|>"),
    re.compile(r"\[/?(?:INST|SYS)\]", re.I),
    re.compile(r"<</?SYS>>", re.I),
    # Role headers at the start of a line
    re.compile(r"^[ \t]*#{0,3}[ \t]*(?:system|assistant)[ \t]*:", re.I | re.M),
    # Instruction override
    re.compile(
        r"\b(?:ignore|disregard|forget|override)\s+(?:all\s+|any\s+)?(?:of\s+)?(?:the\s+|your\s+)?"
        r"(?:previous|prior|above|earlier|preceding)\s+"
        r"(?:instructions?|prompts?|messages?|rules|context)\b",
        re.I,
    ),
    re.compile(r"\bnew\s+instructions\s*:", re.I),
    # Persona switches
    re.compile(r"\byou\s+are\s+now\b", re.I),
    re.compile(r"\bpretend\s+(?:to\s+be|you\s+are)\b", re.I),
    re.compile(r"\b(?:DAN|developer|jailbreak)\s+mode\b", re.I),
    # System prompt extraction
    re.compile(
        r"\b(?:reveal|print|show|repeat|output)\s+(?:me\s+)?(?:your|the)\s+"
        r"(?:system\s+prompt|hidden\s+instructions|initial\s+instructions)\b",
        re.I,
    ),
)

_MARKDOWN_CONTROL = re.compile(r"[`*_#{}\[\]\\]")
_DROPPED_TAGS = ("script", "style", "noscript")


def estimate_tokens(text: str) -> int:
    """Rough token count: 1.5 tokens per whitespace-separated word."""
    return math.ceil(len(text.split()) * TOKENS_PER_WORD)


def strip_markup(text: str) -> str:
    if "<" not in text:
        return _html.unescape(text)
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(_DROPPED_TAGS):
        tag.decompose()
    # get_text already unescapes entities
    return soup.get_text(" ")


def _drop_control_chars(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    return "".join(
        ch
        for ch in text
        if ch in "\n\t" or unicodedata.category(ch) not in ("Cc", "Cf")
    )


def neutralize_injections(text: str) -> str:
    for pattern in INJECTION_PATTERNS:
        text = pattern.sub(FILTERED_MARKER, text)
    return text


def truncate_to_budget(text: str, token_budget: int) -> str:
    """Keep the leading words that fit in ``token_budget`` estimated tokens."""
    words = text.split()
    max_words = math.floor(max(token_budget, 0) / TOKENS_PER_WORD)
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words])


def sanitize(text: str | None, token_budget: int) -> str:
    """Clean one content item for inclusion in a model request."""
    if not text:
        return ""
    cleaned = strip_markup(str(text))
    cleaned = _drop_control_chars(cleaned)
    cleaned = neutralize_injections(cleaned)
    cleaned = _MARKDOWN_CONTROL.sub("", cleaned)
    return truncate_to_budget(cleaned, token_budget)
