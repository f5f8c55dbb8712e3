"""Clean-up applied to text extracted from PDF documents and slide decks."""

from __future__ import annotations

import re
from collections import Counter
from typing import Optional


_SPACE_RUNS = re.compile(r"[ \t\u00a0]+")
_BLANK_RUNS = re.compile(r"\n{3,}")
_STANDALONE_NUMBER = re.compile(r"^[ \t]*\d+[ \t]*$", re.MULTILINE)
_PAGE_OF = re.compile(r"\b(?:Page|Slide)\s*\d+\s*(?:of|/|-)\s*\d+\b", re.IGNORECASE)
_SECTION_LINE = re.compile(r"^(Introduction|Conclusion|Summary|Chapter|Section|Slide \d+:)")


def normalize_whitespace(text: str) -> str:
    lines = [_SPACE_RUNS.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()


def remove_page_numbers(text: str) -> str:
    """Drop bare page numbers and ``Page 3 of 10`` style markers."""

    return _PAGE_OF.sub("", _STANDALONE_NUMBER.sub("", text))


def remove_repeating_lines(
    text: str,
    *,
    min_length: int = 6,
    min_count: int = 4,
    limit: int = 5,
) -> str:
    """Remove lines that repeat often enough to be running headers or footers.

    Section headings and ``Slide N:`` markers are never removed.
    """

    counts = Counter(
        stripped
        for stripped in (line.strip() for line in text.splitlines())
        if len(stripped) >= min_length
    )
    repeated = {
        line
        for line, count in counts.most_common()
        if count >= min_count and not _SECTION_LINE.match(line)
    }
    repeated = set(sorted(repeated, key=counts.__getitem__, reverse=True)[:limit])
    if not repeated:
        return text
    return "\n".join(line for line in text.splitlines() if line.strip() not in repeated)


def clean_extracted_text(text: str, *, title: Optional[str] = None) -> str:
    """Return *text* without running headers, page numbers or ragged spacing.

    When *title* is given, lines consisting only of it are dropped as well;
    slide decks repeat the presentation title in their footers.
    """

    if title and title.strip():
        text = "\n".join(line for line in text.splitlines() if line.strip() != title.strip())
    text = remove_repeating_lines(text)
    text = remove_page_numbers(text)
    return normalize_whitespace(text)


__all__ = [
    "clean_extracted_text",
    "normalize_whitespace",
    "remove_page_numbers",
    "remove_repeating_lines",
]
