"""Context assembly: order, deduplicate and budget retrieved passages for a prompt."""
from typing import Dict, List, Optional, Tuple

from ingestion.tokenizer import count_tokens
from retrieval.models import AssembledContext, Citation, SearchResult
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"


def word_overlap(a: str, b: str) -> float:
    """Jaccard overlap of the lowercase word sets of two texts."""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def format_passage(chunk: SearchResult) -> str:
    page = chunk.page_number if chunk.page_number is not None else "N/A"
    return f"[Source: {chunk.book_title}, Page {page}]\n{chunk.content}"


class ContextAssembler:
    """Packs search results into a single prompt-ready context with citations."""

    def __init__(
        self,
        max_tokens: int = config.MAX_CONTEXT_TOKENS,
        overlap_threshold: float = config.DEDUP_OVERLAP_THRESHOLD
    ):
        self.max_tokens = max_tokens
        self.overlap_threshold = overlap_threshold

    def assemble(self, results: List[SearchResult]) -> AssembledContext:
        """Build the context for a grounded answer.

        Passages are read in (book, page) order, near-duplicates are dropped,
        and once the token budget is tight a higher-similarity passage may
        evict lower-similarity ones already accepted.

        Args:
            results: Retrieved passages in any order

        Returns:
            AssembledContext with rendered text, used passages and citations
        """
        ordered = sorted(results, key=lambda r: (r.book_slug, r.page_number or 0))
        unique = self._deduplicate(ordered)
        used = self._fit_budget(unique)

        context_text = CONTEXT_SEPARATOR.join(format_passage(chunk) for chunk in used)
        citations = self._build_citations(used)

        logger.debug(
            f"Assembled {len(used)} of {len(results)} passages "
            f"({len(unique)} after dedup), {len(citations)} citations"
        )
        return AssembledContext(context_text=context_text, used_chunks=used, citations=citations)

    def _deduplicate(self, results: List[SearchResult]) -> List[SearchResult]:
        accepted: List[SearchResult] = []
        for candidate in results:
            if any(word_overlap(kept.content, candidate.content) > self.overlap_threshold
                   for kept in accepted):
                continue
            accepted.append(candidate)
        return accepted

    def _fit_budget(self, results: List[SearchResult]) -> List[SearchResult]:
        used: List[Tuple[SearchResult, int]] = []
        total = 0

        for chunk in results:
            tokens = count_tokens(chunk.content)
            if total + tokens > self.max_tokens:
                evicted = self._plan_eviction(used, chunk.similarity, total + tokens - self.max_tokens)
                if evicted is None:
                    continue
                for index in sorted(evicted, reverse=True):
                    total -= used[index][1]
                    del used[index]

            used.append((chunk, tokens))
            total += tokens

        return [chunk for chunk, _ in used]

    @staticmethod
    def _plan_eviction(
        used: List[Tuple[SearchResult, int]],
        incoming_similarity: float,
        tokens_needed: int
    ) -> Optional[List[int]]:
        """Indexes of the lowest-similarity passages to drop to free tokens_needed.

        Only passages strictly less similar than the incoming one may be
        evicted. Returns None when that cannot free enough room, in which case
        nothing is evicted and the incoming passage is skipped.
        """
        candidates = sorted(range(len(used)), key=lambda i: used[i][0].similarity)
        evicted: List[int] = []
        freed = 0
        for index in candidates:
            if freed >= tokens_needed:
                break
            if used[index][0].similarity >= incoming_similarity:
                return None
            evicted.append(index)
            freed += used[index][1]
        return evicted if freed >= tokens_needed else None

    @staticmethod
    def _build_citations(used: List[SearchResult]) -> List[Citation]:
        citations: Dict[Tuple[str, Optional[int]], Citation] = {}
        for chunk in used:
            key = (chunk.book_slug, chunk.page_number)
            if key not in citations:
                citations[key] = Citation(
                    book_title=chunk.book_title,
                    book_slug=chunk.book_slug,
                    page_number=chunk.page_number,
                    similarity=chunk.similarity
                )
        return list(citations.values())


def assemble_context(results: List[SearchResult]) -> AssembledContext:
    """Assemble with the default budget and dedup threshold."""
    return ContextAssembler().assemble(results)
