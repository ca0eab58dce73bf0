"""Resumable, idempotent book ingestion.

A run hashes the source document, chunks it, and embeds chunks in batches of
100. Each batch goes through two deduplication layers: a lookup of hashes
already stored for the book, then a conflict-ignoring insert. Progress is
checkpointed on the IngestionRun after every batch, so re-invoking after a
crash resumes at the next batch. The book version only becomes active once
every chunk is committed.
"""
import hashlib
from typing import Callable, List, Optional, Tuple

from embedding.api_clients import EmbeddingClient
from embedding.retry_handler import RetryHandler
from ingestion.chunker import BookChunker
from ingestion.cleaner import clean_page_text
from ingestion.models import IngestionRun, RawPage, TextChunk
from ingestion.pdf_extractor import PDFExtractor
from storage.database import Database, chunk_row_id
from storage.vector_store import VectorStore
from utils.errors import DataIntegrityError, DependencyError, IngestionError, InputError, LibraryError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

# (chunks done, chunks total, inserted so far, skipped so far)
ProgressCallback = Callable[[int, int, int, int], None]


def compute_pdf_hash(book_bytes: bytes) -> str:
    """Short SHA-256 digest identifying one version of a document."""
    return hashlib.sha256(book_bytes).hexdigest()[:config.PDF_HASH_LENGTH]


def prepare_pages(raw_pages: List[RawPage]) -> List[RawPage]:
    """Clean every page and drop blank or noise-only pages."""
    pages = []
    for page in raw_pages:
        cleaned = clean_page_text(page.text)
        if len(cleaned) > config.MIN_PAGE_CHARS:
            pages.append(RawPage(page_number=page.page_number, text=cleaned))
    return pages


class IngestionPipeline:
    """Turns a book document into stored, embedded chunks."""

    def __init__(
        self,
        db: Database,
        vector_store: VectorStore,
        embedding_client: EmbeddingClient,
        extractor: Optional[PDFExtractor] = None,
        chunker: Optional[BookChunker] = None,
        retry_handler: Optional[RetryHandler] = None,
        batch_size: int = config.EMBEDDING_BATCH_SIZE
    ):
        self.db = db
        self.vector_store = vector_store
        self.embedding_client = embedding_client
        self.extractor = extractor or PDFExtractor()
        self.chunker = chunker or BookChunker()
        self.retry_handler = retry_handler or RetryHandler()
        self.batch_size = batch_size

    def ingest(
        self,
        book_bytes: bytes,
        slug: str,
        title: str,
        author: Optional[str] = "Unknown",
        on_progress: Optional[ProgressCallback] = None
    ) -> IngestionRun:
        """Ingest one version of a book.

        Args:
            book_bytes: Raw document bytes
            slug: Stable identifier shared by every version of the book
            title: Display title
            author: Author name
            on_progress: Called after every committed batch

        Returns:
            The completed IngestionRun

        Raises:
            InputError: Missing arguments or a document with no indexable text
            IngestionError: A batch failed; the run is recorded as failed
            DependencyError: The database could not register the book or run
            DataIntegrityError: A row the run depends on disappeared
        """
        if not book_bytes:
            raise InputError("Document is empty")
        if not slug or not slug.strip():
            raise InputError("slug is required")
        if not title or not title.strip():
            raise InputError("title is required")

        pdf_hash = compute_pdf_hash(book_bytes)
        logger.info(f"Starting ingestion: {title} ({slug}, hash {pdf_hash})")

        existing_book = self._storage_call(self.db.get_book_by_slug_and_hash, slug, pdf_hash)
        if existing_book:
            logger.info(f"Book version already registered (ID: {existing_book.id})")

        raw_pages = self.extractor.extract_pages(book_bytes)
        pages = prepare_pages(raw_pages)
        logger.info(f"Extracted {len(pages)} non-empty pages out of {len(raw_pages)}")

        chunks = self.chunker.chunk(pages)
        if not chunks:
            raise InputError(f"No indexable text found in {title}")

        book = existing_book or self._storage_call(
            self.db.insert_book,
            slug=slug,
            title=title,
            author=author,
            pdf_hash=pdf_hash,
            total_pages=len(raw_pages),
            total_chunks=len(chunks)
        )

        run = self._storage_call(self.db.get_running_run, book.id, pdf_hash)
        if run:
            logger.info(f"Resuming run {run.id} from chunk {run.last_processed_chunk_index + 1}")
        else:
            run = self._storage_call(self.db.insert_ingestion_run, book.id, pdf_hash)

        try:
            processed, skipped = self._process_chunks(book.id, run, chunks, on_progress)
            self.db.activate_book(book.id, total_chunks=len(chunks))
            completed = self.db.complete_run(run.id, processed, skipped)
        except Exception as e:
            logger.error(f"Ingestion run {run.id} failed: {e}")
            failed = self._record_failure(run, e)
            if isinstance(e, DataIntegrityError):
                raise
            raise IngestionError(f"Ingestion of {slug} failed: {e}", run=failed) from e

        logger.info(
            f"Ingestion complete: {len(chunks)} chunks, "
            f"{processed} inserted, {skipped} skipped (run {run.id})"
        )
        return completed

    def _storage_call(self, operation, *args, **kwargs):
        """Run a bookkeeping query, mapping driver errors to DependencyError."""
        try:
            return operation(*args, **kwargs)
        except LibraryError:
            raise
        except Exception as e:
            raise DependencyError(f"Database operation {operation.__name__} failed: {e}") from e

    def _record_failure(self, run: IngestionRun, error: Exception) -> Optional[IngestionRun]:
        """Mark run as failed; returns None when the status could not be written."""
        try:
            return self.db.fail_run(run.id, str(error) or type(error).__name__)
        except Exception as e:
            logger.error(f"Could not mark run {run.id} as failed: {e}")
            return None

    def _process_chunks(
        self,
        book_id: str,
        run: IngestionRun,
        chunks: List[TextChunk],
        on_progress: Optional[ProgressCallback]
    ) -> Tuple[int, int]:
        processed = run.chunks_processed
        skipped = run.chunks_skipped
        resume_from = run.last_processed_chunk_index + 1
        total = len(chunks)

        if resume_from:
            logger.info(f"Skipping first {resume_from} chunks already processed")

        for batch_start in range(resume_from, total, self.batch_size):
            batch = chunks[batch_start:batch_start + self.batch_size]

            inserted, batch_skipped = self._process_batch(book_id, batch)
            processed += inserted
            skipped += batch_skipped

            self.db.update_run_progress(run.id, processed, skipped, batch[-1].chunk_index)

            done = batch_start + len(batch)
            logger.debug(f"Progress: {done}/{total} chunks, inserted {processed}, skipped {skipped}")
            if on_progress:
                on_progress(done, total, processed, skipped)

        return processed, skipped

    def _process_batch(self, book_id: str, batch: List[TextChunk]) -> Tuple[int, int]:
        """Embed and store the chunks of one batch that are not stored yet.

        Returns:
            (rows inserted, chunks skipped as duplicates)
        """
        # Layer 1: content already stored for this book, or repeated within the batch
        existing = self.db.get_existing_chunk_hashes(book_id, [c.chunk_hash for c in batch])
        new_chunks = []
        for chunk in batch:
            if chunk.chunk_hash not in existing:
                existing.add(chunk.chunk_hash)
                new_chunks.append(chunk)

        if not new_chunks:
            return 0, len(batch)

        result = self.retry_handler.execute_with_retry(
            self.embedding_client.embed_batch,
            [chunk.content for chunk in new_chunks]
        )
        if len(result.vectors) != len(new_chunks):
            raise DependencyError(
                f"Expected {len(new_chunks)} embeddings, got {len(result.vectors)}"
            )

        ids = [chunk_row_id(book_id, chunk.chunk_hash) for chunk in new_chunks]
        self.vector_store.upsert(
            ids=ids,
            embeddings=result.vectors,
            metadatas=[{"book_id": book_id, "chunk_index": c.chunk_index} for c in new_chunks]
        )

        # Layer 2: a concurrent or retried run may have inserted the same rows meanwhile
        inserted = self.db.insert_chunks([
            {
                'id': row_id,
                'book_id': book_id,
                'chunk_index': chunk.chunk_index,
                'chunk_hash': chunk.chunk_hash,
                'content': chunk.content,
                'page_number': chunk.page_number,
                'section_title': chunk.section_title,
                'token_count': chunk.token_count,
            }
            for row_id, chunk in zip(ids, new_chunks)
        ])

        logger.debug(f"Embedded {len(new_chunks)} chunks ({result.tokens} tokens)")
        return inserted, len(batch) - inserted
