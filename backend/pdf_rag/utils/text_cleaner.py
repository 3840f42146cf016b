"""Text cleaning, page joining and page lookup utilities."""
import re
from bisect import bisect_right
from typing import List, Sequence, Tuple

from pdf_rag.models.document import PageSpan


def clean_text(text: str) -> str:
    """
    Clean and normalize text.

    Args:
        text: Raw text to clean

    Returns:
        Cleaned text with every whitespace run collapsed to a single space
    """
    # Remove special control characters (whitespace controls are handled below)
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)

    # Remove excessive whitespace
    text = re.sub(r"\s+", " ", text)

    # Strip leading/trailing whitespace
    return text.strip()


def join_pages(pages: Sequence[Tuple[int, str]], separator: str = " ") -> Tuple[str, List[PageSpan]]:
    """
    Concatenate page texts, recording where each page lives in the result.

    Empty pages contribute no text and no separator.

    Args:
        pages: (page_number, page_text) tuples in page order
        separator: String placed between consecutive non-empty pages

    Returns:
        (full_text, page_spans) where each span covers its page's text
    """
    parts: List[str] = []
    spans: List[PageSpan] = []
    offset = 0

    for page_number, page_text in pages:
        if not page_text:
            continue
        if parts:
            parts.append(separator)
            offset += len(separator)
        parts.append(page_text)
        spans.append(PageSpan(page_number=page_number, start=offset, end=offset + len(page_text)))
        offset += len(page_text)

    return "".join(parts), spans


def page_for_offset(spans: Sequence[PageSpan], offset: int) -> int:
    """
    Return the page number owning a character offset.

    Offsets that fall on a page separator belong to the preceding page.

    Args:
        spans: Page spans in text order
        offset: Character offset into the joined text

    Returns:
        Page number, or 1 when there are no spans
    """
    if not spans:
        return 1

    starts = [span.start for span in spans]
    position = bisect_right(starts, offset) - 1
    return spans[max(position, 0)].page_number


TITLE_PATTERNS = [
    re.compile(r"^(chapter|section|part)\s+\d+", re.IGNORECASE),
    re.compile(r"^\d+\.[\d.]*\s"),
    re.compile(r"^[A-Z][A-Z\s]+$"),
    re.compile(r"^第?\d+[章节课]\s"),
    re.compile(r"^[一二三四五六七八九十]+[、.\s]"),
    re.compile(r"^(abstract|introduction|overview|summary|conclusions?)\b", re.IGNORECASE),
]


def is_likely_title(line: str) -> bool:
    """
    Heuristic heading check for a single extracted line.

    Lines shorter than 3 or longer than 100 characters never count.
    """
    line = line.strip()
    if len(line) < 3 or len(line) > 100:
        return False
    return any(pattern.search(line) for pattern in TITLE_PATTERNS)


def count_titles(raw_text: str) -> int:
    """Number of lines in raw page text that look like headings."""
    return sum(1 for line in raw_text.splitlines() if is_likely_title(line))
