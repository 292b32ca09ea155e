"""Issue keyword extraction using Claude.

Asks for 5-8 short, lower-case keywords describing the components, change type
and risk signals of an issue. The answer is normalized the same way heuristic
keywords are, so both sources are interchangeable downstream.
"""

from __future__ import annotations

import logging
import re
import time

import anthropic

from issuerisk.extraction.coverage import GENERIC_KEYWORDS, normalize_keywords
from issuerisk.extraction.models import KeywordExtractionResult

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0  # seconds
MAX_TOKENS = 100
BODY_CHAR_LIMIT = 1000
MAX_KEYWORD_LENGTH = 30
DEFAULT_MODEL = "claude-sonnet-4-20250514"

SYSTEM_PROMPT = (
    "You are a keyword extraction assistant. Extract 5-8 concise keywords from GitHub issues "
    "representing components, change types, and risk signals. Return ONLY a comma-separated "
    "list of lowercase keywords, no explanation."
)

EXTRACTION_PROMPT = """\
Extract 5-8 concise keywords from this GitHub issue. Focus on:
- Components/subsystems (e.g., "authentication", "database", "ui")
- Change type (e.g., "refactor", "bugfix", "migration")
- Risk signals (e.g., "breaking-change", "security", "performance", "dependencies")

Title: {title}

Body:
{body}

Return ONLY a comma-separated list of lowercase keywords \
(e.g., "auth, middleware, refactor, security, breaking-change").
"""

_PREFIXES = re.compile(r"^(?:keywords|here are the keywords|extracted keywords)\s*:\s*", re.IGNORECASE)
_SEPARATORS = re.compile(r"[,\n]")


class KeywordExtractor:
    """Extracts topical keywords for an issue with Claude."""

    def __init__(self, client: anthropic.Anthropic, model: str = DEFAULT_MODEL) -> None:
        self._client = client
        self._model = model

    def extract_keywords(
        self, title: str, body: str, issue_number: int | None = None
    ) -> KeywordExtractionResult:
        """Return 5-8 keywords and the number of tokens the call consumed.

        Rate limits are retried with exponential backoff; any other API error
        propagates so callers can fall back to heuristics.
        """
        prompt = EXTRACTION_PROMPT.format(title=title, body=_truncate_body(body or ""))
        label = f"issue #{issue_number}" if issue_number else "issue"

        for attempt in range(MAX_RETRIES):
            try:
                response = self._client.messages.create(
                    model=self._model,
                    max_tokens=MAX_TOKENS,
                    temperature=0.1,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                )
                break
            except anthropic.RateLimitError:
                if attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(f"Rate limited extracting keywords for {label}, retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    logger.error(f"Rate limited extracting keywords for {label} after {MAX_RETRIES} retries")
                    raise

        keywords = parse_keywords(_response_text(response))
        tokens_used = _tokens_used(response)
        logger.info(f"Extracted {len(keywords)} keywords for {label} ({tokens_used} tokens)")
        return KeywordExtractionResult(keywords=keywords, tokens_used=tokens_used)


def parse_keywords(text: str) -> list[str]:
    """Parse a comma-separated answer into 5-8 normalized keywords."""
    cleaned = text.strip()

    # Handle markdown code fences
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
        cleaned = cleaned.strip()

    cleaned = _PREFIXES.sub("", cleaned)
    candidates = [
        part.strip().strip('"').lower()
        for part in _SEPARATORS.split(cleaned)
        if part.strip() and len(part.strip()) < MAX_KEYWORD_LENGTH
    ]
    keywords = normalize_keywords(candidates)

    for fallback in GENERIC_KEYWORDS:
        if len(keywords) >= 5:
            break
        if fallback not in keywords:
            keywords.append(fallback)
    return keywords[:8]


def _truncate_body(body: str) -> str:
    if len(body) > BODY_CHAR_LIMIT:
        return body[:BODY_CHAR_LIMIT] + "..."
    return body


def _response_text(response: anthropic.types.Message) -> str:
    if not response.content:
        logger.warning("Empty keyword extraction response")
        return ""
    return response.content[0].text or ""


def _tokens_used(response: anthropic.types.Message) -> int:
    usage = getattr(response, "usage", None)
    if usage is None:
        return 0
    try:
        return int(usage.input_tokens or 0) + int(usage.output_tokens or 0)
    except (TypeError, ValueError):
        return 0
