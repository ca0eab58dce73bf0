"""Test resumable, idempotent ingestion."""
import sqlite3

import httpx
import pytest

from ingestion.models import RawPage
from ingestion.pipeline import compute_pdf_hash, prepare_pages
from storage.database import chunk_row_id
from utils.errors import DependencyError, IngestionError, InputError

from fakes import Crash, FailingEmbeddingClient, FakeEmbeddingClient, page_text

FIVE_PAGES = [page_text(p) for p in range(1, 6)]


def _rate_limit_error():
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    return httpx.HTTPStatusError(
        "429 Too Many Requests",
        request=request,
        response=httpx.Response(429, request=request)
    )


def test_first_ingestion(db, vector_store, make_pipeline):
    """Test that every chunk is embedded, stored and the book activated."""
    client = FakeEmbeddingClient()
    progress = []

    run = make_pipeline(FIVE_PAGES, client).ingest(
        b"v1", "dom-casmurro", "Dom Casmurro", "Machado de Assis",
        on_progress=lambda *args: progress.append(args)
    )

    assert run.status == "completed"
    assert run.completed_at is not None
    assert run.chunks_processed == 5
    assert run.chunks_skipped == 0
    assert run.last_processed_chunk_index == 4
    assert run.pdf_hash == compute_pdf_hash(b"v1")

    book = db.get_book(run.book_id)
    assert book.is_active
    assert book.total_chunks == 5
    assert book.total_pages == 5
    assert db.count_chunks(book.id) == 5

    assert len(client.batches) == 3
    assert vector_store.count() == 5
    assert set(vector_store.items) == {
        chunk_row_id(book.id, chunk_hash) for chunk_hash in db.get_chunk_hashes(book.id)
    }
    assert progress == [(2, 5, 2, 0), (4, 5, 4, 0), (5, 5, 5, 0)]


def test_reingesting_same_document_is_a_no_op(db, make_pipeline):
    first = make_pipeline(FIVE_PAGES).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    client = FakeEmbeddingClient()
    second = make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert second.id != first.id
    assert second.book_id == first.book_id
    assert second.status == "completed"
    assert second.chunks_processed == 0
    assert second.chunks_skipped == 5
    assert client.batches == []
    assert db.count_chunks(first.book_id) == 5
    assert len(db.get_runs(first.book_id)) == 2
    assert db.get_book(first.book_id).is_active


def test_resume_after_crash(db, vector_store, make_pipeline):
    """Test that a killed run is resumed from its checkpoint by the next call."""
    crashing = FailingEmbeddingClient(Crash(), fail_on=(2,))

    with pytest.raises(Crash):
        make_pipeline(FIVE_PAGES, crashing).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    book = db.get_book_by_slug_and_hash("dom-casmurro", compute_pdf_hash(b"v1"))
    interrupted = db.get_running_run(book.id, book.pdf_hash)
    assert interrupted.status == "running"
    assert interrupted.last_processed_chunk_index == 1
    assert interrupted.chunks_processed == 2
    assert not book.is_active
    assert db.count_chunks(book.id) == 2

    client = FakeEmbeddingClient()
    resumed = make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert resumed.id == interrupted.id
    assert resumed.status == "completed"
    assert resumed.chunks_processed == 5
    assert resumed.last_processed_chunk_index == 4
    assert len(client.embedded_texts) == 3
    assert not set(client.embedded_texts) & set(crashing.embedded_texts)
    assert db.count_chunks(book.id) == 5
    assert sorted(meta["chunk_index"] for _, meta in vector_store.items.values()) == [0, 1, 2, 3, 4]
    assert db.get_book(book.id).is_active


def test_failed_run_keeps_previous_version_active(db, make_pipeline):
    make_pipeline(FIVE_PAGES).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    failing = FailingEmbeddingClient(RuntimeError("embedding service down"))
    new_pages = [page_text(p, topic="seminary") for p in range(1, 4)]

    with pytest.raises(IngestionError) as exc_info:
        make_pipeline(new_pages, failing).ingest(b"v2", "dom-casmurro", "Dom Casmurro")

    failed = exc_info.value.run
    assert failed.status == "failed"
    assert failed.error_message == "embedding service down"
    assert failed.completed_at is not None
    assert isinstance(exc_info.value.__cause__, RuntimeError)

    active = db.get_active_book("dom-casmurro")
    assert active.pdf_hash == compute_pdf_hash(b"v1")
    assert not db.get_book(failed.book_id).is_active


def test_failed_run_is_not_resumed(db, make_pipeline):
    failing = FailingEmbeddingClient(RuntimeError("boom"), fail_on=(2,))
    with pytest.raises(IngestionError) as exc_info:
        make_pipeline(FIVE_PAGES, failing).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    client = FakeEmbeddingClient()
    retried = make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert retried.id != exc_info.value.run.id
    # Chunks committed by the failed run are skipped by the hash lookup
    assert retried.chunks_processed == 3
    assert retried.chunks_skipped == 2
    assert len(client.embedded_texts) == 3


def test_bookkeeping_failure_is_a_dependency_error(db, make_pipeline, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "insert_ingestion_run", locked)

    with pytest.raises(DependencyError) as exc_info:
        make_pipeline(FIVE_PAGES).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert not isinstance(exc_info.value, IngestionError)
    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)


def test_failure_to_record_failed_run_keeps_original_error(db, make_pipeline, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "fail_run", locked)
    failing = FailingEmbeddingClient(RuntimeError("embedding service down"))

    with pytest.raises(IngestionError) as exc_info:
        make_pipeline(FIVE_PAGES, failing).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert exc_info.value.run is None
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert "embedding service down" in str(exc_info.value)


def test_rate_limits_are_retried_with_backoff(make_pipeline, sleeps):
    client = FailingEmbeddingClient(_rate_limit_error(), fail_on=(1, 2))

    run = make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert run.status == "completed"
    assert run.chunks_processed == 5
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.5
    assert 2.0 <= sleeps[1] <= 2.5


def test_rate_limit_retries_are_bounded(make_pipeline, sleeps):
    client = FailingEmbeddingClient(_rate_limit_error(), fail_on=tuple(range(1, 20)))

    with pytest.raises(IngestionError) as exc_info:
        make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert client.calls == 5
    assert len(sleeps) == 4
    assert isinstance(exc_info.value.__cause__, httpx.HTTPStatusError)


def test_other_errors_are_not_retried(make_pipeline, sleeps):
    client = FailingEmbeddingClient(ValueError("bad input"))

    with pytest.raises(IngestionError):
        make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert client.calls == 1
    assert sleeps == []


def test_new_version_replaces_old(db, make_pipeline):
    first = make_pipeline(FIVE_PAGES).ingest(b"v1", "dom-casmurro", "Dom Casmurro")
    new_pages = [page_text(p, topic="seminary") for p in range(1, 4)]
    second = make_pipeline(new_pages).ingest(b"v2", "dom-casmurro", "Dom Casmurro")

    assert second.book_id != first.book_id
    versions = db.get_books_by_slug("dom-casmurro")
    assert len(versions) == 2
    assert [b.id for b in versions if b.is_active] == [second.book_id]
    assert db.get_active_book_ids(["dom-casmurro"]) == [second.book_id]
    # Old chunks stay stored for audit
    assert db.count_chunks(first.book_id) == 5


def test_conflicting_insert_counts_as_skipped(db, vector_store, make_pipeline, monkeypatch):
    """Test the insert-level dedup when the hash lookup misses existing rows."""
    first = make_pipeline(FIVE_PAGES).ingest(b"v1", "dom-casmurro", "Dom Casmurro")
    monkeypatch.setattr(db, "get_existing_chunk_hashes", lambda book_id, hashes: set())

    client = FakeEmbeddingClient()
    second = make_pipeline(FIVE_PAGES, client).ingest(b"v1", "dom-casmurro", "Dom Casmurro")

    assert len(client.embedded_texts) == 5
    assert second.chunks_processed == 0
    assert second.chunks_skipped == 5
    assert db.count_chunks(first.book_id) == 5
    assert vector_store.count() == 5


def test_repeated_content_within_a_book_is_stored_once(db, make_pipeline):
    client = FakeEmbeddingClient()
    repeated = [page_text(1)] * 4

    run = make_pipeline(repeated, client, batch_size=4).ingest(b"v1", "echo", "Echo")

    # Every chunk after the first carries the same overlap prefix and text
    assert len(client.embedded_texts) == 2
    assert run.chunks_processed == 2
    assert run.chunks_skipped == 2
    assert db.count_chunks(run.book_id) == 2
    assert db.get_book(run.book_id).total_chunks == 4


@pytest.mark.parametrize("book_bytes,slug,title", [
    (b"", "slug", "Title"),
    (b"v1", "", "Title"),
    (b"v1", "   ", "Title"),
    (b"v1", "slug", ""),
])
def test_missing_arguments(make_pipeline, book_bytes, slug, title):
    with pytest.raises(InputError):
        make_pipeline(FIVE_PAGES).ingest(book_bytes, slug, title)


def test_document_without_text_registers_nothing(db, make_pipeline):
    with pytest.raises(InputError):
        make_pipeline(["Too short.", "   ", ""]).ingest(b"v1", "empty", "Empty")

    assert db.get_all_books() == []


def test_compute_pdf_hash():
    digest = compute_pdf_hash(b"%PDF-1.7 some bytes")

    assert len(digest) == 16
    assert digest == compute_pdf_hash(b"%PDF-1.7 some bytes")
    assert digest != compute_pdf_hash(b"%PDF-1.7 other bytes")
    int(digest, 16)


def test_prepare_pages_drops_blank_pages():
    pages = prepare_pages([
        RawPage(page_number=1, text="  A page with real text on it.  "),
        RawPage(page_number=2, text="   \n\n  "),
        RawPage(page_number=3, text="12"),
        RawPage(page_number=4, text="Another\r\n\r\n\r\n\r\npage."),
    ])

    assert [p.page_number for p in pages] == [1, 4]
    assert pages[0].text == "A page with real text on it."
    assert pages[1].text == "Another\n\npage."
