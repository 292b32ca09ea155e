"""Keyword coverage: guarantee every risk profile carries 5-8 topical keywords.

LLM-extracted keywords are preferred, but the extractor may be missing, may
fail, or may answer with filler ("feature", "update"). In those cases keywords
are mined heuristically from the issue title, body, labels, evidence and the
paths of the files that changed. Everything here is deterministic: ties are
broken lexicographically, never randomly.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from issuerisk.extraction.models import KeywordContext

MAX_KEYWORDS = 8
MIN_KEYWORDS = 5
BODY_CHAR_LIMIT = 600

# Filler the extractor tends to produce; also used as the last-resort padding.
GENERIC_KEYWORDS: tuple[str, ...] = (
    "feature",
    "change",
    "update",
    "improvement",
    "task",
    "maintenance",
    "general",
    "misc",
)

STOP_WORDS = frozenset({
    "the", "and", "for", "with", "from", "this", "that", "into", "issue",
    "pull", "commit", "commits", "request", "requests", "adds", "adding", "added",
    "fix", "fixes", "updates", "changing", "refresh", "add", "control",
    "button", "enhancement", "files", "focus", "areas", "recent", "work",
    "summary", "source", "repository", "lines", "changed", "touched",
    "volume", "direct", "merged", "history", "are", "was", "were", "not",
    "but", "has", "have", "had", "should", "would", "could", "when", "what",
    "which", "who", "why", "how", "its", "been", "being", "will", "can",
})

# Scaffolding directories that say nothing about the topic of a change
COMMON_PATH_SEGMENTS = frozenset({
    "src", "source", "lib", "app", "apps", "package", "packages", "pkg",
    "node_modules", "scripts", "config", "configs", "docs", "doc", "build",
    "dist", "out", "public", "assets", "test", "tests", "spec", "specs",
    "__tests__", "plans", "extension",
})

_DISALLOWED_CHARS = re.compile(r"[^a-z0-9\-_/ ]+")
_WHITESPACE = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_LETTER_DIGIT = re.compile(r"([a-z])([0-9])")
_DIGIT_LETTER = re.compile(r"([0-9])([a-z])")
_PATH_SEPARATORS = re.compile(r"[\\/]+")
_EXTENSION = re.compile(r"\.[^.]+$")

_NOISE = STOP_WORDS | frozenset(GENERIC_KEYWORDS)


def normalize_keywords(candidates: Iterable[str], max_count: int = MAX_KEYWORDS) -> list[str]:
    """Lower-case, strip punctuation, drop short/stop words, de-duplicate, cap."""
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in candidates:
        if not raw:
            continue
        cleaned = _DISALLOWED_CHARS.sub("", raw.strip().lower())
        cleaned = _WHITESPACE.sub(" ", cleaned).strip()
        if len(cleaned) < 3 or cleaned in _NOISE or cleaned in seen:
            continue
        seen.add(cleaned)
        normalized.append(cleaned)
    return normalized[:max_count]


def is_generic_keyword_set(keywords: list[str]) -> bool:
    """True when every keyword is filler (an empty list is not generic)."""
    if not keywords:
        return False
    return all(keyword in GENERIC_KEYWORDS for keyword in keywords)


def ensure_keyword_coverage(
    candidates: Iterable[str] | None,
    context: KeywordContext,
    min_count: int = MIN_KEYWORDS,
    max_count: int = MAX_KEYWORDS,
) -> list[str]:
    """Return between min_count and max_count clean keywords for an issue."""
    max_count = max(1, min(max_count, MAX_KEYWORDS))
    min_count = max(0, min(min_count, max_count))

    raw = [candidate.strip().lower() for candidate in candidates or [] if candidate]
    keywords = normalize_keywords(raw, max_count)
    if len(keywords) < min_count or is_generic_keyword_set(raw):
        keywords = normalize_keywords([*keywords, *build_heuristic_keywords(context, max_count)], max_count)

    for fallback in GENERIC_KEYWORDS:
        if len(keywords) >= min_count:
            break
        if fallback not in keywords:
            keywords.append(fallback)

    return keywords[:max_count]


def build_heuristic_keywords(context: KeywordContext, desired_count: int = MAX_KEYWORDS) -> list[str]:
    """Rank single tokens and 2-3 token phrases by weighted occurrence.

    Weights: title 5, labels 4, evidence summaries 4, body 3, change summary 3,
    file path segments 3. A phrase weighs its source weight times its length.
    """
    extra_stop_words = set(split_identifier(context.repository))
    token_weights: dict[str, int] = {}
    phrase_weights: dict[str, int] = {}

    def record_tokens(tokens: list[str], weight: int) -> None:
        filtered = [t for t in tokens if len(t) >= 3 and t not in extra_stop_words]
        if not filtered:
            return
        for token in filtered:
            token_weights[token] = token_weights.get(token, 0) + weight
        for size in range(min(3, len(filtered)), 1, -1):
            for index in range(len(filtered) - size + 1):
                phrase = "-".join(filtered[index:index + size])
                if len(phrase) < 5:
                    continue
                phrase_weights[phrase] = phrase_weights.get(phrase, 0) + weight * size

    def record_text(text: str | None, weight: int) -> None:
        if text:
            record_tokens(split_identifier(text, extra_stop_words), weight)

    record_text(context.issue_title, 5)
    record_text(_truncate(context.issue_body, BODY_CHAR_LIMIT), 3)
    record_text(context.change_summary, 3)
    for label in context.labels:
        # "good first issue" -> one hyphenated token run
        record_text(_WHITESPACE.sub("-", label), 4)
    for summary in context.evidence_summaries:
        record_text(summary, 4)
    for file_path in context.file_paths:
        tokens: list[str] = []
        for segment in _PATH_SEPARATORS.split(file_path):
            if not segment:
                continue
            segment = _EXTENSION.sub("", segment)
            if segment.lower() in COMMON_PATH_SEGMENTS:
                continue
            tokens.extend(split_identifier(segment, extra_stop_words))
        record_tokens(tokens, 3)

    sorted_phrases = [p for p, _ in sorted(phrase_weights.items(), key=lambda item: (-item[1], item[0]))]
    sorted_tokens = [t for t, _ in sorted(token_weights.items(), key=lambda item: (-item[1], item[0]))]

    combined: list[str] = []
    for candidate in [*sorted_phrases, *sorted_tokens]:
        if len(combined) >= desired_count:
            break
        if candidate not in combined:
            combined.append(candidate)
    return combined


def split_identifier(value: str | None, extra_stop_words: set[str] | None = None) -> list[str]:
    """Split free text or identifiers ("oauth2client", "user_store") into clean tokens."""
    if not value:
        return []
    text = _NON_ALNUM.sub(" ", value.lower())
    text = _LETTER_DIGIT.sub(r"\1 \2", text)
    text = _DIGIT_LETTER.sub(r"\1 \2", text)
    extra = extra_stop_words or set()
    return [
        token
        for token in text.split()
        if len(token) >= 3 and token not in _NOISE and token not in extra
    ]


def _truncate(value: str | None, max_length: int) -> str | None:
    if not value:
        return None
    return f"{value[:max_length]}..." if len(value) > max_length else value
