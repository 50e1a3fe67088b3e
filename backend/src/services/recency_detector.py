"""Decide whether an AI request needs fresh information from the web."""

import re

FORCE_WEB_SEARCH_PHRASES = [
    "search web",
    "search the web",
    "look it up online",
    "browse the web",
    "check online",
    "use internet",
]

DISABLE_WEB_SEARCH_PHRASES = [
    "no web search",
    "without web search",
    "do not search web",
    "don't search web",
    "dont search web",
    "without internet",
    "offline only",
]

RECENCY_PATTERNS = [
    re.compile(r"\blatest\b", re.IGNORECASE),
    re.compile(r"\brecent\b", re.IGNORECASE),
    re.compile(r"\bcurrent\b", re.IGNORECASE),
    re.compile(r"\btoday\b", re.IGNORECASE),
    re.compile(r"\byesterday\b", re.IGNORECASE),
    re.compile(r"\bthis week\b", re.IGNORECASE),
    re.compile(r"\bthis month\b", re.IGNORECASE),
    re.compile(r"\bthis year\b", re.IGNORECASE),
    re.compile(r"\bbreaking news\b", re.IGNORECASE),
    re.compile(r"\bjust announced\b", re.IGNORECASE),
    re.compile(r"\bup[- ]to[- ]date\b", re.IGNORECASE),
    re.compile(r"\bright now\b", re.IGNORECASE),
    re.compile(r"\bprice of\b", re.IGNORECASE),
    re.compile(r"\bstock price\b", re.IGNORECASE),
    re.compile(r"\bweather\b", re.IGNORECASE),
    re.compile(r"\bscore\b", re.IGNORECASE),
    re.compile(r"\belection\b", re.IGNORECASE),
    re.compile(r"\bwho is (the )?(president|ceo|prime minister)\b", re.IGNORECASE),
]

MODEL_TERM_PATTERN = re.compile(
    r"\b(gpt|openai|claude|gemini|llama|mistral|o1|o3|o4)\b", re.IGNORECASE
)
VERSION_PATTERN = re.compile(r"\b\d+(\.\d+){1,2}\b")
RELEASE_PATTERN = re.compile(
    r"\b(version|release|released|announced|launch|latest model|new model)\b",
    re.IGNORECASE,
)


def should_use_web_search(
    user_message: str,
    custom_prompt: str | None = None,
    target_message_content: str | None = None,
) -> bool:
    """True when the request asks for, or clearly depends on, recent facts.

    Explicit instructions win: a force phrase always searches, then a disable
    phrase never does. Otherwise questions about model releases and
    time-sensitive topics trigger a search.
    """
    text = " ".join(
        p for p in (user_message, custom_prompt, target_message_content) if p
    ).lower()
    if not text.strip():
        return False

    if any(phrase in text for phrase in FORCE_WEB_SEARCH_PHRASES):
        return True
    if any(phrase in text for phrase in DISABLE_WEB_SEARCH_PHRASES):
        return False

    if MODEL_TERM_PATTERN.search(text) and (
        VERSION_PATTERN.search(text) or RELEASE_PATTERN.search(text)
    ):
        return True

    return any(pattern.search(text) for pattern in RECENCY_PATTERNS)
