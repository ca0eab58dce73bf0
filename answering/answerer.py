"""Grounded question answering over the library using Anthropic."""
import asyncio
import re
import time
from typing import Callable, Dict, List, Optional

import anthropic
from anthropic import Anthropic
from pydantic import BaseModel

from answering import prompts
from monitoring.search_log import SearchLogEntry, log_search
from retrieval.context import ContextAssembler
from retrieval.engine import RetrievalEngine
from retrieval.models import Citation
from storage.database import Database
from utils.errors import DependencyError, InputError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

# List markers and stray quotes models put around suggested questions
FOLLOWUP_PREFIX = re.compile(r'^[\s\-\d.):"*]+')
FOLLOWUP_SUFFIX = re.compile(r'[*"]+$')


class Completion(BaseModel):
    text: str
    input_tokens: int
    output_tokens: int


class AnswerLatency(BaseModel):
    embedding_ms: int
    retrieval_ms: int
    llm_ms: int
    total_ms: int


class AnswerTokens(BaseModel):
    embedding: int
    llm_input: int
    llm_output: int


class AnswerResult(BaseModel):
    answer: str
    citations: List[Citation]
    context_chunks_used: int
    is_fallback: bool
    latency: AnswerLatency
    tokens: AnswerTokens
    suggestions: List[str] = []


def parse_followups(raw: str, limit: int = config.FOLLOWUP_COUNT) -> List[str]:
    """Keep the lines of a model reply that are complete questions.

    Args:
        raw: Model output, one question per line
        limit: Maximum number of questions returned

    Returns:
        Questions stripped of list markers, in reply order
    """
    questions = []
    for line in raw.splitlines():
        line = FOLLOWUP_SUFFIX.sub("", FOLLOWUP_PREFIX.sub("", line.strip()))
        if len(line) < config.FOLLOWUP_MIN_CHARS:
            continue
        if not line.endswith("?") or not line[0].isupper():
            continue
        questions.append(line)
    return questions[:limit]


class Answerer:
    """Retrieves passages, assembles context and streams a grounded answer."""

    def __init__(
        self,
        engine: RetrievalEngine,
        db: Database,
        client: Anthropic,
        model: str = config.ANTHROPIC_MODEL,
        assembler: Optional[ContextAssembler] = None
    ):
        self.engine = engine
        self.db = db
        self.client = client
        self.model = model
        self.assembler = assembler or ContextAssembler()

    async def ask(
        self,
        query: str,
        book_slugs: Optional[List[str]] = None,
        top_k: int = config.DEFAULT_TOP_K,
        history: Optional[List[Dict[str, str]]] = None,
        on_text: Optional[Callable[[str], None]] = None
    ) -> AnswerResult:
        """Answer a question from the indexed books.

        When nothing relevant enough is retrieved the model is asked for a
        fallback answer that names the library's books instead of citing them.

        Args:
            query: User question
            book_slugs: Optional allow-list of book slugs
            top_k: Passages per search branch
            history: Earlier user/assistant messages; only the last 6 are sent
            on_text: Receives each streamed text increment

        Returns:
            AnswerResult
        """
        if not query or not query.strip():
            raise InputError("query is required and must be a non-empty string")
        query = query.strip()
        total_start = time.perf_counter()

        retrieval = await self.engine.retrieve(query, book_slugs=book_slugs, top_k=top_k)
        results = retrieval.results
        recent_history = list(history or [])[-config.HISTORY_MESSAGES:]

        best_similarity = results[0].similarity if results else 0.0
        is_fallback = not results or best_similarity < config.FALLBACK_SIMILARITY

        if is_fallback:
            logger.info(f"Falling back: best similarity {best_similarity:.2f}")
            titles = await asyncio.to_thread(self.db.get_active_book_titles)
            system = prompts.fallback_system_prompt(titles)
            user = prompts.fallback_user_prompt(query)
            citations: List[Citation] = []
            used_count = 0
            max_tokens = config.FALLBACK_MAX_TOKENS
            temperature = config.FALLBACK_TEMPERATURE
        else:
            context = self.assembler.assemble(results)
            system = prompts.system_prompt()
            user = prompts.user_prompt(context.context_text, query)
            citations = context.citations
            used_count = len(context.used_chunks)
            max_tokens = config.ANSWER_MAX_TOKENS
            temperature = config.ANSWER_TEMPERATURE

        llm_start = time.perf_counter()
        completion = await asyncio.to_thread(
            self._stream_completion,
            system,
            recent_history + [{"role": "user", "content": user}],
            max_tokens,
            temperature,
            on_text
        )
        llm_ms = int((time.perf_counter() - llm_start) * 1000)
        total_ms = int((time.perf_counter() - total_start) * 1000)

        log_search(self.db, SearchLogEntry(
            query_text=query,
            book_slugs_filter=book_slugs,
            results_count=used_count,
            top_similarity=None if is_fallback else best_similarity,
            latency_embedding_ms=retrieval.latency.embedding_ms,
            latency_retrieval_ms=retrieval.latency.retrieval_ms,
            latency_llm_ms=llm_ms,
            latency_total_ms=total_ms,
            llm_model=self.model,
            answer_tokens=completion.output_tokens
        ))

        suggestions: List[str] = []
        if not is_fallback and completion.text:
            suggestions = await asyncio.to_thread(self.suggest_followups, query, completion.text)

        return AnswerResult(
            answer=completion.text,
            citations=citations,
            context_chunks_used=used_count,
            is_fallback=is_fallback,
            latency=AnswerLatency(
                embedding_ms=retrieval.latency.embedding_ms,
                retrieval_ms=retrieval.latency.retrieval_ms,
                llm_ms=llm_ms,
                total_ms=total_ms
            ),
            tokens=AnswerTokens(
                embedding=retrieval.embedding_tokens,
                llm_input=completion.input_tokens,
                llm_output=completion.output_tokens
            ),
            suggestions=suggestions
        )

    def suggest_followups(self, query: str, answer: str) -> List[str]:
        """Ask the model for follow-up questions to a grounded answer.

        Suggestions are optional: any failure is logged and yields no questions.
        """
        try:
            message = self.client.messages.create(
                model=self.model,
                max_tokens=config.FOLLOWUP_MAX_TOKENS,
                temperature=config.FOLLOWUP_TEMPERATURE,
                system=prompts.followup_system_prompt(config.FOLLOWUP_COUNT),
                messages=[{"role": "user", "content": prompts.followup_user_prompt(query, answer)}]
            )
            raw = "".join(block.text for block in message.content if block.type == "text")
        except Exception as e:
            logger.warning(f"Skipping follow-up suggestions: {e}")
            return []

        return parse_followups(raw)

    def _stream_completion(
        self,
        system: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
        on_text: Optional[Callable[[str], None]]
    ) -> Completion:
        parts: List[str] = []
        try:
            with self.client.messages.stream(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages
            ) as stream:
                for text in stream.text_stream:
                    parts.append(text)
                    if on_text:
                        on_text(text)
                final = stream.get_final_message()
        except anthropic.APIError as e:
            raise DependencyError(f"Completion failed: {e}") from e

        return Completion(
            text="".join(parts),
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens
        )
