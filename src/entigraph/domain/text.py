"""Text helpers: slugs, grouping keys and markup stripping."""

from __future__ import annotations

import html
import re
import unicodedata

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_BLOCK_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_SCRIPT_STYLE = re.compile(
    r"<(script|style|noscript)\b[^>]*>.*?</\1\s*>",
    re.DOTALL | re.IGNORECASE,
)
_BLOCK_TAG = re.compile(
    r"</?(?:p|div|br|li|ul|ol|h[1-6]|blockquote|pre|table|tr|td|th|section|article|header|"
    r"footer|figure|figcaption|hr)\b[^>]*>",
    re.IGNORECASE,
)
_ANY_TAG = re.compile(r"<[^>]+>")
_INLINE_SPACE = re.compile(r"[ \t\r\f\v\u00a0]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")

LEGAL_SUFFIXES: frozenset[str] = frozenset(
    {"inc", "incorporated", "corp", "corporation", "co", "ltd", "llc", "plc", "gmbh", "ag", "sa"}
)


def slugify(value: str) -> str:
    """Lowercase ASCII slug with hyphen separators."""

    text = unicodedata.normalize("NFKD", value)
    text = text.encode("ascii", "ignore").decode("ascii").casefold()
    text = text.replace("&", " and ")
    return _NON_ALNUM.sub("-", text).strip("-")


def grouping_key(name: str) -> str:
    """Collapse surface variants of a name into one alphanumeric key.

    Trailing legal-form tokens are dropped so that "Apple" and "Apple Inc."
    land in the same group; a name made only of such a token keeps it.
    """

    tokens = [token for token in slugify(name).split("-") if token]
    while len(tokens) > 1 and tokens[-1] in LEGAL_SUFFIXES:
        tokens.pop()
    return "".join(tokens)


def html_to_text(markup: str) -> str:
    """Strip markup down to readable plain text."""

    text = _BLOCK_COMMENT.sub("", markup)
    text = _SCRIPT_STYLE.sub("", text)
    text = _BLOCK_TAG.sub("\n", text)
    text = _ANY_TAG.sub("", text)
    text = html.unescape(text)
    text = _INLINE_SPACE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def truncate(text: str, limit: int, *, suffix: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + suffix
