"""Text cleaning utilities."""
import re
from typing import List

_EXCESS_NEWLINES = re.compile(r'\n{3,}')
_HORIZONTAL_WHITESPACE = re.compile(r'[ \t]+')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')
_PARAGRAPH_BREAK = re.compile(r'\n{2,}')


def clean_page_text(text: str) -> str:
    """Clean extracted page text into the canonical form used for hashing and display.

    Args:
        text: Raw text of one page

    Returns:
        Cleaned text
    """
    # Normalize line endings
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    # Collapse excessive blank lines to a single paragraph break
    text = _EXCESS_NEWLINES.sub('\n\n', text)

    # Normalize whitespace within lines
    text = _HORIZONTAL_WHITESPACE.sub(' ', text)

    text = _CONTROL_CHARS.sub('', text)

    return text.strip()


def split_paragraphs(text: str) -> List[str]:
    """Split cleaned text on blank lines, dropping empty paragraphs."""
    paragraphs = (para.strip() for para in _PARAGRAPH_BREAK.split(text))
    return [para for para in paragraphs if para]
