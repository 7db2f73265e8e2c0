"""
Intelligent logic layer: chunking, noise filtering and content hashing.

These utilities decide what part of an assistant reply is worth keeping:
  - Paragraph/sentence chunking of long replies before storage
  - Named exclusion and value rules that reject acknowledgements and
    keep explanations, decisions and code
  - Content normalization and hashing used as the deduplication key
"""

from __future__ import annotations

import enum
import hashlib
import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Chunks shorter than this are never archived.
MIN_CONTENT_LENGTH: int = 50

#: Paragraphs longer than this are split on sentence boundaries.
MAX_PARAGRAPH_LENGTH: int = 1000

#: Target size of a sentence-accumulated chunk.
SENTENCE_CHUNK_SIZE: int = 800

#: A chunk with at least this many words is kept even without value signals.
MIN_VALUABLE_WORDS: int = 10


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def extract_chunks(text: str, min_length: int = MIN_CONTENT_LENGTH) -> list[str]:
    """
    Split an assistant reply into archive candidates.

    Strategy:
      1. Split on blank lines (paragraph boundaries) and trim.
      2. Drop paragraphs shorter than *min_length*.
      3. Split paragraphs longer than ``MAX_PARAGRAPH_LENGTH`` into
         sentences and accumulate them until the next sentence would push
         the chunk past ``SENTENCE_CHUNK_SIZE``.
      4. Keep every other paragraph whole.

    Chunks are returned in reply order.
    """
    chunks: list[str] = []

    for para in re.split(r"\n\n+", text):
        para = para.strip()
        if len(para) < min_length:
            continue

        if len(para) <= MAX_PARAGRAPH_LENGTH:
            chunks.append(para)
            continue

        current = ""
        for sentence in _split_sentences(para):
            if len(current) + len(sentence) > SENTENCE_CHUNK_SIZE:
                if len(current) >= min_length:
                    chunks.append(current.strip())
                current = sentence
            else:
                current = f"{current} {sentence}" if current else sentence
        if len(current) >= min_length:
            chunks.append(current.strip())

    return chunks


def _split_sentences(text: str) -> list[str]:
    """Naïve sentence splitter on whitespace after '.', '!' or '?'."""
    return [p for p in re.split(r"(?<=[.!?])\s+", text) if p]


# ---------------------------------------------------------------------------
# Filtering rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    """A named regular-expression predicate over chunk text."""

    name: str
    pattern: re.Pattern[str]

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(name: str, pattern: str, flags: int = 0) -> Rule:
    return Rule(name, re.compile(pattern, flags))


#: Whole-string noise patterns.  A chunk matching any of these is skipped.
EXCLUSION_RULES: tuple[Rule, ...] = (
    _rule(
        "acknowledgement",
        r"^(ok|okay|done|yes|no|sure|thanks|thank you|got it|understood|alright)\.?$",
        re.IGNORECASE,
    ),
    _rule("greeting", r"^(hello|hi|hey|bye|goodbye)\.?$", re.IGNORECASE),
    _rule("bare_yes", r"^y(es)?$", re.IGNORECASE),
    _rule("bare_no", r"^n(o)?$", re.IGNORECASE),
    _rule("bare_number", r"^\d+$"),
    _rule("bare_punctuation", r"^[.!?]+$"),
)

#: Signals that a chunk carries durable knowledge.
VALUE_RULES: tuple[Rule, ...] = (
    _rule("function_definition", r"function\s+\w+", re.IGNORECASE),
    _rule("class_definition", r"class\s+\w+", re.IGNORECASE),
    _rule("interface_definition", r"interface\s+\w+", re.IGNORECASE),
    _rule("import_statement", r"import\s+"),
    _rule("export_statement", r"export\s+"),
    _rule("const_declaration", r"const\s+\w+\s*="),
    _rule("let_declaration", r"let\s+\w+\s*="),
    _rule("python_def", r"def\s+\w+"),
    _rule("problem_report", r"error|bug|fix|issue|problem", re.IGNORECASE),
    _rule(
        "change_report",
        r"implemented?|created?|added?|updated?|modified?|removed?",
        re.IGNORECASE,
    ),
    _rule("reasoning", r"because|since|therefore|however|although", re.IGNORECASE),
)


class FilterVerdict(enum.Enum):
    KEEP = "keep"
    TOO_SHORT = "too_short"
    EXCLUDED = "excluded"
    LOW_VALUE = "low_value"

    @property
    def kept(self) -> bool:
        return self is FilterVerdict.KEEP


def matching_rule(text: str, rules: tuple[Rule, ...]) -> Rule | None:
    """Return the first rule in *rules* matching *text*."""
    for rule in rules:
        if rule.matches(text):
            return rule
    return None


def is_excluded(text: str) -> bool:
    return matching_rule(text.strip(), EXCLUSION_RULES) is not None


def is_valuable(text: str) -> bool:
    if matching_rule(text, VALUE_RULES) is not None:
        return True
    return len(text.split()) >= MIN_VALUABLE_WORDS


def classify_chunk(chunk: str, min_length: int = MIN_CONTENT_LENGTH) -> FilterVerdict:
    """Run *chunk* through the length, exclusion and value gates in order."""
    if len(chunk.strip()) < min_length:
        return FilterVerdict.TOO_SHORT
    if is_excluded(chunk):
        return FilterVerdict.EXCLUDED
    if not is_valuable(chunk):
        return FilterVerdict.LOW_VALUE
    return FilterVerdict.KEEP


# ---------------------------------------------------------------------------
# Content hashing
# ---------------------------------------------------------------------------


def normalize_content(text: str) -> str:
    """Canonical form used for storage and deduplication (trimmed text)."""
    return text.strip()


def content_hash(text: str) -> str:
    """Return the SHA-256 hex digest of the normalized *text*."""
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()
