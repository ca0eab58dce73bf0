"""Hybrid (vector + keyword) retrieval over the indexed books."""
import asyncio
import re
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from embedding.api_clients import EmbeddingClient
from retrieval.models import RetrievalLatency, RetrievalOptions, RetrievalResult, SearchResult
from storage.database import Database
from storage.vector_store import VectorStore
from utils.errors import DependencyError, InputError, LibraryError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

# Words too common to be useful as keyword filters. The library is mostly
# Portuguese, with English queries also seen in practice.
STOP_WORDS = frozenset({
    'que', 'para', 'com', 'uma', 'uns', 'umas', 'por', 'nos', 'nas', 'dos',
    'das', 'aos', 'nao', 'não', 'como', 'mas', 'mais', 'seu', 'sua', 'seus',
    'suas', 'ele', 'ela', 'eles', 'elas', 'isso', 'este', 'esta', 'esse',
    'essa', 'isto', 'aqui', 'ali', 'quando', 'onde', 'porque', 'sobre',
    'entre', 'sendo', 'fazer', 'feito', 'dizer', 'disse', 'pode', 'tem',
    'ter', 'ser', 'foi', 'eram', 'está', 'estao', 'são', 'sem', 'muito',
    'ainda', 'pela', 'pelo', 'pelas', 'pelos', 'num', 'numa', 'procure',
    'busque', 'encontre', 'livro', 'livros', 'texto', 'autor', 'obra',
    'referencias', 'menção', 'menciona', 'fala', 'diz', 'escreve',
    'what', 'which', 'when', 'where', 'does', 'that', 'this', 'these', 'those',
    'with', 'from', 'about', 'have', 'there', 'their', 'would', 'should',
    'could', 'into', 'than', 'then', 'them', 'they', 'were', 'will', 'book',
    'books', 'author', 'says', 'mention', 'mentions',
})

_NON_WORD = re.compile(r'[^\w\u00C0-\u024F]')


def extract_keyword_terms(query: str) -> List[str]:
    """Distinct lowercase terms of 4+ characters that are not stop words, at most 6."""
    terms: List[str] = []
    for word in query.split():
        term = _NON_WORD.sub('', word.lower())
        if len(term) >= config.KEYWORD_MIN_LENGTH and term not in STOP_WORDS and term not in terms:
            terms.append(term)
    return terms[:config.KEYWORD_MAX_TERMS]


def merge_results(
    vector_results: List[SearchResult],
    keyword_rows: List[Dict[str, Any]]
) -> List[SearchResult]:
    """Vector hits in rank order, then keyword-only hits at the synthetic similarity."""
    seen = {result.id for result in vector_results}
    merged = list(vector_results)
    for row in keyword_rows:
        if row['id'] in seen:
            continue
        seen.add(row['id'])
        merged.append(SearchResult(**row, similarity=config.KEYWORD_MATCH_SIMILARITY))
    return merged


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class RetrievalEngine:
    """Embeds a query and merges semantic and lexical matches."""

    def __init__(
        self,
        db: Database,
        vector_store: VectorStore,
        embedding_client: EmbeddingClient
    ):
        self.db = db
        self.vector_store = vector_store
        self.embedding_client = embedding_client

    async def retrieve(
        self,
        query: str,
        book_slugs: Optional[List[str]] = None,
        top_k: int = config.DEFAULT_TOP_K,
        similarity_threshold: float = config.DEFAULT_SIMILARITY_THRESHOLD
    ) -> RetrievalResult:
        """Search the active books for passages relevant to query.

        An empty result list is a normal outcome, not an error.

        Args:
            query: Natural-language question
            book_slugs: Optional allow-list of book slugs
            top_k: Per-branch result cap, clamped to 10
            similarity_threshold: Vector similarity floor

        Returns:
            RetrievalResult with merged results, query token cost and latencies

        Raises:
            InputError: Blank query or out-of-range options
            DependencyError: Embedding or storage failure
        """
        try:
            options = RetrievalOptions(
                query=query,
                book_slugs=book_slugs,
                top_k=top_k,
                similarity_threshold=similarity_threshold
            )
        except ValidationError as e:
            raise InputError(str(e)) from e

        embed_start = time.perf_counter()
        try:
            embedding = await asyncio.to_thread(self.embedding_client.embed, options.query)
        except LibraryError:
            raise
        except Exception as e:
            raise DependencyError(f"Query embedding failed: {e}") from e
        embedding_ms = _elapsed_ms(embed_start)

        book_ids: Optional[List[str]] = None
        if options.book_slugs:
            try:
                book_ids = await asyncio.to_thread(self.db.get_active_book_ids, options.book_slugs)
            except Exception as e:
                raise DependencyError(f"Book filter lookup failed: {e}") from e
            if not book_ids:
                logger.info(f"No active books match {options.book_slugs}")
                return RetrievalResult(
                    results=[],
                    embedding_tokens=embedding.tokens,
                    latency=RetrievalLatency(embedding_ms=embedding_ms, retrieval_ms=0)
                )

        retrieval_start = time.perf_counter()
        vector_results, keyword_rows = await asyncio.gather(
            asyncio.to_thread(self._vector_search, embedding.vector, options, book_ids),
            asyncio.to_thread(self._keyword_search, options, book_ids),
        )
        retrieval_ms = _elapsed_ms(retrieval_start)

        results = merge_results(vector_results, keyword_rows)
        logger.info(
            f"Retrieved {len(results)} results ({len(vector_results)} semantic) "
            f"in {embedding_ms + retrieval_ms} ms"
        )
        return RetrievalResult(
            results=results,
            embedding_tokens=embedding.tokens,
            latency=RetrievalLatency(embedding_ms=embedding_ms, retrieval_ms=retrieval_ms)
        )

    def _vector_search(
        self,
        vector: List[float],
        options: RetrievalOptions,
        book_ids: Optional[List[str]]
    ) -> List[SearchResult]:
        try:
            allowed = book_ids if book_ids is not None else self.db.get_active_book_ids()
            matches = self.vector_store.query(
                vector,
                n_results=options.top_k,
                book_ids=allowed,
                similarity_threshold=options.similarity_threshold
            )
            rows = self.db.get_search_rows([chunk_id for chunk_id, _ in matches])
        except Exception as e:
            raise DependencyError(f"Vector search failed: {e}") from e

        # Ids without a row belong to deactivated books or to a batch whose insert never committed
        return [
            SearchResult(**rows[chunk_id], similarity=similarity)
            for chunk_id, similarity in matches
            if chunk_id in rows
        ]

    def _keyword_search(
        self,
        options: RetrievalOptions,
        book_ids: Optional[List[str]]
    ) -> List[Dict[str, Any]]:
        terms = extract_keyword_terms(options.query)
        if not terms:
            return []

        try:
            return self.db.keyword_search(terms, limit=options.top_k, book_ids=book_ids)
        except Exception as e:
            raise DependencyError(f"Keyword search failed: {e}") from e
