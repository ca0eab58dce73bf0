"""Pydantic models for retrieval and context assembly."""
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional

import config


class RetrievalOptions(BaseModel):
    """Every option a search accepts, with its default."""
    query: str
    book_slugs: Optional[List[str]] = None
    top_k: int = Field(default=config.DEFAULT_TOP_K, ge=1)
    similarity_threshold: float = Field(default=config.DEFAULT_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)

    @field_validator('query')
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError('query must be a non-empty string')
        return value

    @field_validator('top_k')
    @classmethod
    def clamp_top_k(cls, value: int) -> int:
        return min(value, config.MAX_TOP_K)


class SearchResult(BaseModel):
    id: str
    book_id: str
    book_slug: str
    book_title: str
    content: str
    page_number: Optional[int] = None
    section_title: Optional[str] = None
    similarity: float = Field(ge=0.0, le=1.0)


class RetrievalLatency(BaseModel):
    embedding_ms: int = 0
    retrieval_ms: int = 0


class RetrievalResult(BaseModel):
    results: List[SearchResult]
    embedding_tokens: int
    latency: RetrievalLatency


class Citation(BaseModel):
    book_title: str
    book_slug: str
    page_number: Optional[int] = None
    similarity: float


class AssembledContext(BaseModel):
    context_text: str
    used_chunks: List[SearchResult]
    citations: List[Citation]
