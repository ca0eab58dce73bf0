"""Best-effort search telemetry."""
from typing import List, Optional

from pydantic import BaseModel

from storage.database import Database
from utils.logger import setup_logger

logger = setup_logger(__name__)


class SearchLogEntry(BaseModel):
    query_text: str
    book_slugs_filter: Optional[List[str]] = None
    results_count: int = 0
    top_similarity: Optional[float] = None
    latency_embedding_ms: Optional[int] = None
    latency_retrieval_ms: Optional[int] = None
    latency_llm_ms: Optional[int] = None
    latency_total_ms: Optional[int] = None
    llm_model: Optional[str] = None
    answer_tokens: Optional[int] = None


def log_search(db: Database, entry: SearchLogEntry) -> None:
    """Record one search. A failed write is logged and never raised."""
    try:
        db.insert_search_log(entry.model_dump())
    except Exception as e:
        logger.warning(f"Failed to write search log: {e}")
