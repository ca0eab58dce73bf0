"""Book text chunking module."""
import hashlib
import re
from typing import List, NamedTuple, Optional
from utils.logger import setup_logger
from ingestion.cleaner import clean_page_text, split_paragraphs
from ingestion.models import RawPage, TextChunk
from ingestion.tokenizer import count_tokens, truncate_to_tokens
import config

logger = setup_logger(__name__)

# Sentence runs ending in . ! or ? (optionally closed by a quote), a trailing run
# without terminal punctuation, or a bare newline.
_SENTENCE = re.compile(r'[^.!?]*[.!?]+["\']?|[^.!?]+$|\s*\n')

SECTION_TITLE_MAX_CHARS = 80
OVERLAP_SEPARATOR = '\n\n'


class _Passage(NamedTuple):
    text: str
    page_number: int


def compute_chunk_hash(content: str) -> str:
    """SHA-256 hex digest of chunk content."""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def detect_section_title(text: str) -> Optional[str]:
    """Treat a short first line that does not end a sentence as a heading.

    Args:
        text: Chunk text without any overlap prefix

    Returns:
        The heading, or None
    """
    first_line = text.split('\n', 1)[0].strip()
    if 0 < len(first_line) < SECTION_TITLE_MAX_CHARS and not first_line.endswith('.'):
        return first_line
    return None


class BookChunker:
    """Chunks cleaned book pages into overlapping, content-addressed units for embedding."""

    def __init__(
        self,
        chunk_size: int = config.CHUNK_SIZE_TOKENS,
        overlap: int = config.CHUNK_OVERLAP_TOKENS,
        min_chunk_tokens: int = config.MIN_CHUNK_TOKENS
    ):
        """Initialize chunker.

        Args:
            chunk_size: Token ceiling for the text of a chunk before overlap is added
            overlap: Token ceiling for the tail carried over from the previous chunk
            min_chunk_tokens: Raw chunks below this are discarded
        """
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_tokens = min_chunk_tokens

    def chunk(self, pages: List[RawPage]) -> List[TextChunk]:
        """Chunk the pages of one book.

        Args:
            pages: Pages in reading order

        Returns:
            Ordered list of TextChunks
        """
        passages = self._collect_paragraphs(pages)
        raw_chunks = self._pack(passages)

        kept = [raw for raw in raw_chunks if count_tokens(raw.text) >= self.min_chunk_tokens]
        dropped = len(raw_chunks) - len(kept)
        if dropped:
            logger.debug(f"Dropped {dropped} undersized chunks")

        chunks = self._apply_overlap(kept)
        logger.info(f"Created {len(chunks)} chunks from {len(pages)} pages")
        return chunks

    def _collect_paragraphs(self, pages: List[RawPage]) -> List[_Passage]:
        passages = []
        for page in pages:
            for paragraph in split_paragraphs(clean_page_text(page.text)):
                passages.append(_Passage(paragraph, page.page_number))
        return passages

    def _pack(self, passages: List[_Passage]) -> List[_Passage]:
        """Greedily merge paragraphs into raw chunks of at most chunk_size tokens."""
        raw_chunks: List[_Passage] = []
        buffer: List[str] = []
        buffer_page = 0

        def flush():
            if buffer:
                raw_chunks.append(_Passage('\n\n'.join(buffer), buffer_page))
                buffer.clear()

        for passage in passages:
            if count_tokens(passage.text) > self.chunk_size:
                flush()
                raw_chunks.extend(self._split_oversized(passage))
                continue

            if buffer and count_tokens('\n\n'.join(buffer + [passage.text])) > self.chunk_size:
                flush()

            if not buffer:
                buffer_page = passage.page_number
            buffer.append(passage.text)

        flush()
        return raw_chunks

    def _split_oversized(self, passage: _Passage) -> List[_Passage]:
        """Split a paragraph that exceeds chunk_size at sentence boundaries."""
        sentences = [s.strip() for s in _SENTENCE.findall(passage.text)]
        sentences = [s for s in sentences if s] or [passage.text]

        pieces: List[str] = []
        current = ''
        for sentence in sentences:
            if count_tokens(sentence) > self.chunk_size:
                if current:
                    pieces.append(current)
                    current = ''
                pieces.extend(self._split_by_words(sentence))
                continue

            combined = f"{current} {sentence}" if current else sentence
            if count_tokens(combined) > self.chunk_size:
                pieces.append(current)
                current = sentence
            else:
                current = combined

        if current:
            pieces.append(current)

        return [_Passage(piece, passage.page_number) for piece in pieces]

    def _split_by_words(self, text: str) -> List[str]:
        """Last resort for a single sentence longer than chunk_size."""
        pieces: List[str] = []
        current = ''
        for word in text.split():
            while count_tokens(word) > self.chunk_size:
                if current:
                    pieces.append(current)
                    current = ''
                head = truncate_to_tokens(word, self.chunk_size)
                cut = len(head) if word.startswith(head) and head else max(1, len(head) - 1)
                pieces.append(word[:cut])
                word = word[cut:]
            if not word:
                continue

            combined = f"{current} {word}" if current else word
            if current and count_tokens(combined) > self.chunk_size:
                pieces.append(current)
                current = word
            else:
                current = combined

        if current:
            pieces.append(current)
        return pieces

    def _tail(self, text: str) -> str:
        """Whole words from the end of text, at most `overlap` tokens."""
        words = text.split()
        tail: List[str] = []
        for word in reversed(words):
            if count_tokens(' '.join([word] + tail)) > self.overlap:
                break
            tail.insert(0, word)
        return ' '.join(tail)

    def _apply_overlap(self, raw_chunks: List[_Passage]) -> List[TextChunk]:
        chunks: List[TextChunk] = []
        previous_tail = ''
        previous_section: Optional[str] = None

        for index, raw in enumerate(raw_chunks):
            content = f"{previous_tail}{OVERLAP_SEPARATOR}{raw.text}" if previous_tail else raw.text
            section_title = detect_section_title(raw.text) or previous_section

            chunks.append(
                TextChunk(
                    content=content,
                    chunk_index=index,
                    page_number=raw.page_number,
                    section_title=section_title,
                    token_count=count_tokens(content),
                    chunk_hash=compute_chunk_hash(content)
                )
            )

            previous_tail = self._tail(raw.text)
            previous_section = section_title

        return chunks
