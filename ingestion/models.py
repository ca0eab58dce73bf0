"""Pydantic models for ingestion module."""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Literal, Optional

RunStatus = Literal["running", "completed", "failed"]


class RawPage(BaseModel):
    """Text of one physical page as produced by the extractor."""
    page_number: int = Field(gt=0)
    text: str

    model_config = {"frozen": True}


class TextChunk(BaseModel):
    """Represents a token-bounded, content-addressed chunk of book text."""
    content: str
    chunk_index: int = Field(ge=0)
    page_number: int = Field(gt=0)
    section_title: Optional[str] = None
    token_count: int = Field(ge=0)
    chunk_hash: str

    model_config = {"frozen": True}


class Book(BaseModel):
    """One indexed version of a book. Re-indexing creates a new row."""
    id: str
    slug: str
    title: str
    author: Optional[str] = None
    pdf_hash: str
    total_pages: Optional[int] = None
    total_chunks: Optional[int] = None
    indexed_at: Optional[datetime] = None
    is_active: bool = False


class IngestionRun(BaseModel):
    """Audit and resume record for one ingestion attempt."""
    id: str
    book_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: RunStatus
    chunks_processed: int = 0
    chunks_skipped: int = 0
    last_processed_chunk_index: int = -1
    error_message: Optional[str] = None
    pdf_hash: str

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")
