"""SQLite database operations for books, chunks, ingestion runs and search logs."""
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Set
from contextlib import contextmanager

from utils.logger import setup_logger
from utils.errors import DataIntegrityError
from ingestion.models import Book, IngestionRun
import config

logger = setup_logger(__name__)

# Chunk ids are derived from (book_id, chunk_hash) so that the relational row and
# the vector store entry for the same content always share an id.
CHUNK_ID_NAMESPACE = uuid.UUID("4f1c7a52-8d0e-4b8e-9a53-0c6d2f1e7b11")


def chunk_row_id(book_id: str, chunk_hash: str) -> str:
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, f"{book_id}:{chunk_hash}"))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(values: List[Any]) -> str:
    return ", ".join("?" for _ in values)


class Database:
    """Manages SQLite database operations."""

    def __init__(self, db_path: Path = config.DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema_sql)
            conn.commit()

        logger.debug(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        # SQLite's lower() only folds ASCII
        conn.create_function("py_lower", 1, lambda s: s.lower() if s else s, deterministic=True)
        try:
            yield conn
        finally:
            conn.close()

    def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        with self._get_connection() as conn:
            conn.execute("SELECT id FROM books LIMIT 1").fetchall()

    # ─── Books ──────────────────────────────────────────────────────────────

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book(**dict(row)) if row else None

    def get_book_by_slug_and_hash(self, slug: str, pdf_hash: str) -> Optional[Book]:
        """Find the row for one version of a book, active or not.

        Args:
            slug: Stable book identifier
            pdf_hash: Short content digest of the source document

        Returns:
            Book or None
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE slug = ? AND pdf_hash = ?",
                (slug, pdf_hash)
            ).fetchone()
            return Book(**dict(row)) if row else None

    def get_active_book(self, slug: str) -> Optional[Book]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE slug = ? AND is_active = 1",
                (slug,)
            ).fetchone()
            return Book(**dict(row)) if row else None

    def insert_book(
        self,
        slug: str,
        title: str,
        author: Optional[str],
        pdf_hash: str,
        total_pages: int,
        total_chunks: int
    ) -> Book:
        """Insert a new, inactive book version.

        A concurrent run that registered the same (slug, pdf_hash) first wins;
        its row is returned instead.

        Returns:
            The stored Book
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO books
                    (id, slug, title, author, pdf_hash, total_pages, total_chunks, indexed_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (str(uuid.uuid4()), slug, title, author, pdf_hash, total_pages, total_chunks, _now())
            )
            conn.commit()

        book = self.get_book_by_slug_and_hash(slug, pdf_hash)
        if book is None:
            raise DataIntegrityError(f"Book {slug} ({pdf_hash}) missing right after insert")

        logger.info(f"Registered book: {title} (ID: {book.id})")
        return book

    def activate_book(self, book_id: str, total_chunks: int) -> None:
        """Make book_id the only active version of its slug, in one transaction.

        Raises:
            DataIntegrityError: If the book row no longer exists
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT slug FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise DataIntegrityError(f"Book {book_id} vanished before activation")

            deactivated = conn.execute(
                "UPDATE books SET is_active = 0 WHERE slug = ? AND id != ? AND is_active = 1",
                (row['slug'], book_id)
            ).rowcount
            conn.execute(
                """
                UPDATE books
                SET is_active = 1, total_chunks = ?,
                    indexed_at = CASE WHEN is_active = 1 THEN indexed_at ELSE ? END
                WHERE id = ?
                """,
                (total_chunks, _now(), book_id)
            )
            conn.commit()

        if deactivated:
            logger.info(f"Deactivated {deactivated} previous version(s) of {row['slug']}")

    def get_all_books(self) -> List[Book]:
        """Get every book version, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY title, indexed_at DESC").fetchall()
            return [Book(**dict(row)) for row in rows]

    def get_books_by_slug(self, slug: str) -> List[Book]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM books WHERE slug = ? ORDER BY indexed_at DESC",
                (slug,)
            ).fetchall()
            return [Book(**dict(row)) for row in rows]

    def get_active_book_titles(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT title FROM books WHERE is_active = 1 ORDER BY title"
            ).fetchall()
            return [row['title'] for row in rows]

    def get_active_book_ids(self, slugs: Optional[Iterable[str]] = None) -> List[str]:
        """Ids of active books, optionally restricted to the given slugs."""
        query = "SELECT id FROM books WHERE is_active = 1"
        params: List[Any] = []
        if slugs is not None:
            params = list(slugs)
            if not params:
                return []
            query += f" AND slug IN ({_placeholders(params)})"

        with self._get_connection() as conn:
            return [row['id'] for row in conn.execute(query, params).fetchall()]

    # ─── Ingestion runs ─────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> Optional[IngestionRun]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM ingestion_runs WHERE id = ?", (run_id,)).fetchone()
            return IngestionRun(**dict(row)) if row else None

    def get_running_run(self, book_id: str, pdf_hash: str) -> Optional[IngestionRun]:
        """Latest run still marked running for this book version, i.e. the resume checkpoint."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM ingestion_runs
                WHERE book_id = ? AND pdf_hash = ? AND status = 'running'
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (book_id, pdf_hash)
            ).fetchone()
            return IngestionRun(**dict(row)) if row else None

    def get_runs(self, book_id: str, limit: int = 10) -> List[IngestionRun]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM ingestion_runs WHERE book_id = ? ORDER BY started_at DESC LIMIT ?",
                (book_id, limit)
            ).fetchall()
            return [IngestionRun(**dict(row)) for row in rows]

    def insert_ingestion_run(self, book_id: str, pdf_hash: str) -> IngestionRun:
        run_id = str(uuid.uuid4())

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO ingestion_runs
                    (id, book_id, started_at, status, chunks_processed, chunks_skipped,
                     last_processed_chunk_index, pdf_hash)
                VALUES (?, ?, ?, 'running', 0, 0, -1, ?)
                """,
                (run_id, book_id, _now(), pdf_hash)
            )
            conn.commit()

        return self._require_run(run_id)

    def update_run_progress(
        self,
        run_id: str,
        chunks_processed: int,
        chunks_skipped: int,
        last_processed_chunk_index: int
    ) -> None:
        """Persist the durable resume point after a batch."""
        self._update_run(
            run_id,
            "UPDATE ingestion_runs SET chunks_processed = ?, chunks_skipped = ?, "
            "last_processed_chunk_index = ? WHERE id = ?",
            (chunks_processed, chunks_skipped, last_processed_chunk_index, run_id)
        )

    def complete_run(self, run_id: str, chunks_processed: int, chunks_skipped: int) -> IngestionRun:
        self._update_run(
            run_id,
            "UPDATE ingestion_runs SET status = 'completed', completed_at = ?, "
            "chunks_processed = ?, chunks_skipped = ? WHERE id = ?",
            (_now(), chunks_processed, chunks_skipped, run_id)
        )
        return self._require_run(run_id)

    def fail_run(self, run_id: str, error_message: str) -> IngestionRun:
        self._update_run(
            run_id,
            "UPDATE ingestion_runs SET status = 'failed', completed_at = ?, error_message = ? "
            "WHERE id = ?",
            (_now(), error_message, run_id)
        )
        return self._require_run(run_id)

    def _update_run(self, run_id: str, sql: str, params: tuple) -> None:
        with self._get_connection() as conn:
            updated = conn.execute(sql, params).rowcount
            conn.commit()
        if updated == 0:
            raise DataIntegrityError(f"Ingestion run {run_id} not found")

    def _require_run(self, run_id: str) -> IngestionRun:
        run = self.get_run(run_id)
        if run is None:
            raise DataIntegrityError(f"Ingestion run {run_id} not found")
        return run

    # ─── Chunks ─────────────────────────────────────────────────────────────

    def get_existing_chunk_hashes(self, book_id: str, chunk_hashes: List[str]) -> Set[str]:
        """Which of the given hashes are already stored for this book."""
        if not chunk_hashes:
            return set()

        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT chunk_hash FROM chunks WHERE book_id = ? AND chunk_hash IN ({_placeholders(chunk_hashes)})",
                [book_id, *chunk_hashes]
            ).fetchall()
            return {row['chunk_hash'] for row in rows}

    def insert_chunks(self, chunks: List[Dict[str, Any]]) -> int:
        """Bulk insert chunks, silently ignoring (book_id, chunk_hash) conflicts.

        Args:
            chunks: List of chunk dictionaries

        Returns:
            Number of rows actually inserted
        """
        if not chunks:
            return 0

        created_at = _now()
        rows = [{**chunk, 'created_at': created_at} for chunk in chunks]

        with self._get_connection() as conn:
            inserted = conn.executemany(
                """
                INSERT OR IGNORE INTO chunks
                    (id, book_id, chunk_index, chunk_hash, content, page_number, section_title,
                     token_count, created_at)
                VALUES (:id, :book_id, :chunk_index, :chunk_hash, :content, :page_number,
                        :section_title, :token_count, :created_at)
                """,
                rows
            ).rowcount
            conn.commit()

        logger.debug(f"Inserted {inserted} of {len(chunks)} chunks")
        return inserted

    def count_chunks(self, book_id: str) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE book_id = ?", (book_id,)
            ).fetchone()[0]

    def get_chunk(self, chunk_id: str) -> Optional[Dict[str, Any]]:
        """Get one stored chunk with its book's slug and title, active or not."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT c.*, b.slug AS book_slug, b.title AS book_title
                FROM chunks c JOIN books b ON b.id = c.book_id
                WHERE c.id = ?
                """,
                (chunk_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_chunk_hashes(self, book_id: str) -> Set[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT chunk_hash FROM chunks WHERE book_id = ?", (book_id,)
            ).fetchall()
            return {row['chunk_hash'] for row in rows}

    # ─── Search ─────────────────────────────────────────────────────────────

    _SEARCH_COLUMNS = """
        c.id, c.book_id, b.slug AS book_slug, b.title AS book_title,
        c.content, c.page_number, c.section_title
    """

    def get_search_rows(self, chunk_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Chunk rows of active books joined with their book, keyed by chunk id."""
        if not chunk_ids:
            return {}

        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {self._SEARCH_COLUMNS}
                FROM chunks c JOIN books b ON b.id = c.book_id
                WHERE b.is_active = 1 AND c.id IN ({_placeholders(chunk_ids)})
                """,
                chunk_ids
            ).fetchall()
            return {row['id']: dict(row) for row in rows}

    def keyword_search(
        self,
        terms: List[str],
        limit: int,
        book_ids: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Chunks of active books containing ANY of the terms, case-insensitively.

        Args:
            terms: Lowercase search terms
            limit: Row cap
            book_ids: Optional allow-list of book ids

        Returns:
            List of row dictionaries
        """
        if not terms:
            return []

        conditions = " OR ".join("instr(py_lower(c.content), ?) > 0" for _ in terms)
        params: List[Any] = list(terms)
        book_filter = ""
        if book_ids is not None:
            book_filter = f"AND c.book_id IN ({_placeholders(book_ids)})"
            params.extend(book_ids)
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {self._SEARCH_COLUMNS}
                FROM chunks c JOIN books b ON b.id = c.book_id
                WHERE b.is_active = 1 AND ({conditions}) {book_filter}
                ORDER BY c.book_id, c.chunk_index
                LIMIT ?
                """,
                params
            ).fetchall()
            return [dict(row) for row in rows]

    def insert_search_log(self, entry: Dict[str, Any]) -> None:
        """Insert one search telemetry row."""
        slugs = entry.get('book_slugs_filter')
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO search_logs
                    (id, query_text, book_slugs_filter, results_count, top_similarity,
                     latency_embedding_ms, latency_retrieval_ms, latency_llm_ms, latency_total_ms,
                     llm_model, answer_tokens, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    entry['query_text'],
                    json.dumps(slugs) if slugs is not None else None,
                    entry.get('results_count', 0),
                    entry.get('top_similarity'),
                    entry.get('latency_embedding_ms'),
                    entry.get('latency_retrieval_ms'),
                    entry.get('latency_llm_ms'),
                    entry.get('latency_total_ms'),
                    entry.get('llm_model'),
                    entry.get('answer_tokens'),
                    _now()
                )
            )
            conn.commit()

    def get_search_logs(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM search_logs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [dict(row) for row in rows]
