"""Test the command line interface."""
import pytest
from click.testing import CliRunner
from rich.console import Console

import main
from ingestion.pipeline import IngestionPipeline
from storage.database import chunk_row_id

from fakes import FailingEmbeddingClient, FakeAnthropic, FakeEmbeddingClient, FakeExtractor, page_text


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_env(db, vector_store, monkeypatch):
    """Point every command at the test database, fake vector store and fake embeddings."""
    state = {"client": FakeEmbeddingClient(), "pages": [page_text(p) for p in range(1, 4)]}

    def pipeline(db, vector_store, client):
        return IngestionPipeline(db, vector_store, client, extractor=FakeExtractor(state["pages"]))

    monkeypatch.setattr(main, "Database", lambda: db)
    monkeypatch.setattr(main, "VectorStore", lambda: vector_store)
    monkeypatch.setattr(main, "create_embedding_client", lambda: state["client"])
    monkeypatch.setattr(main, "IngestionPipeline", pipeline)
    monkeypatch.setattr(main, "console", Console(width=200))
    return state


@pytest.fixture
def book_pdf(tmp_path):
    path = tmp_path / "dom-casmurro.pdf"
    path.write_bytes(b"%PDF-1.7 version one")
    return path


def _ingest(runner, book_pdf):
    return runner.invoke(main.cli, [
        "ingest", "--pdf", str(book_pdf), "--slug", "dom-casmurro", "--title", "Dom Casmurro"
    ])


def test_ingest(runner, cli_env, book_pdf, db):
    result = _ingest(runner, book_pdf)

    assert result.exit_code == 0, result.output
    assert "Ingestion complete" in result.output
    assert db.get_active_book("dom-casmurro").total_chunks == 3


def test_ingest_failure(runner, cli_env, book_pdf, db):
    cli_env["client"] = FailingEmbeddingClient(RuntimeError("provider down"))

    result = _ingest(runner, book_pdf)

    assert result.exit_code == 1
    assert "Ingestion failed" in result.output
    assert db.get_active_book("dom-casmurro") is None


def test_ingest_missing_file(runner, cli_env, tmp_path):
    result = runner.invoke(main.cli, [
        "ingest", "--pdf", str(tmp_path / "missing.pdf"), "--slug", "x", "--title", "X"
    ])

    assert result.exit_code != 0


def test_search(runner, cli_env, book_pdf, db):
    _ingest(runner, book_pdf)

    result = runner.invoke(main.cli, ["search", "harbour dawn"])

    assert result.exit_code == 0, result.output
    assert "Dom Casmurro" in result.output
    assert db.get_search_logs()[0]["query_text"] == "harbour dawn"


def test_search_unknown_book(runner, cli_env, book_pdf):
    _ingest(runner, book_pdf)

    result = runner.invoke(main.cli, ["search", "harbour", "--book", "missing"])

    assert result.exit_code == 0
    assert "No matching passages found" in result.output


def test_search_blank_query(runner, cli_env):
    result = runner.invoke(main.cli, ["search", "   "])

    assert result.exit_code == 1
    assert "Error" in result.output


def test_ask(runner, cli_env, book_pdf, monkeypatch):
    _ingest(runner, book_pdf)
    monkeypatch.setattr(main.config, "ANTHROPIC_API_KEY", "test-key")
    monkeypatch.setattr(main, "Anthropic", lambda api_key: FakeAnthropic(parts=("The harbour ", "at dawn.")))

    result = runner.invoke(main.cli, ["ask", "What happens at the harbour?"])

    assert result.exit_code == 0, result.output
    assert "The harbour at dawn." in result.output


def test_ask_prints_suggestions(runner, cli_env, book_pdf, vector_store, monkeypatch):
    _ingest(runner, book_pdf)
    query = "What happens at the harbour?"
    # Aim the question straight at a stored chunk so the answer is grounded
    cli_env["client"].vectors[query] = next(iter(vector_store.items.values()))[0]
    monkeypatch.setattr(main.config, "ANTHROPIC_API_KEY", "test-key")
    client = FakeAnthropic(
        parts=("The harbour at dawn.",),
        suggestions="1. What does the harbour look like at night?"
    )
    monkeypatch.setattr(main, "Anthropic", lambda api_key: client)

    result = runner.invoke(main.cli, ["ask", query])

    assert result.exit_code == 0, result.output
    assert "Sources" in result.output
    assert "You could also ask:" in result.output
    assert "What does the harbour look like at night?" in result.output


def test_ask_without_api_key(runner, cli_env, monkeypatch):
    monkeypatch.setattr(main.config, "ANTHROPIC_API_KEY", None)

    result = runner.invoke(main.cli, ["ask", "anything"])

    assert result.exit_code == 1
    assert "ANTHROPIC_API_KEY" in result.output


def test_books(runner, cli_env, book_pdf):
    empty = runner.invoke(main.cli, ["books"])
    _ingest(runner, book_pdf)
    listed = runner.invoke(main.cli, ["books"])

    assert "No books have been indexed yet" in empty.output
    assert "dom-casmurro" in listed.output


def test_inspect_book(runner, cli_env, book_pdf):
    _ingest(runner, book_pdf)

    result = runner.invoke(main.cli, ["inspect-book", "dom-casmurro"])

    assert result.exit_code == 0, result.output
    assert "3 chunks stored" in result.output
    assert "completed" in result.output


def test_inspect_unknown_book(runner, cli_env):
    result = runner.invoke(main.cli, ["inspect-book", "missing"])

    assert result.exit_code == 1
    assert "Book not found" in result.output


def test_inspect_book_marks_resumable_runs(runner, cli_env, book_pdf, db):
    _ingest(runner, book_pdf)
    book = db.get_active_book("dom-casmurro")
    db.insert_ingestion_run(book.id, book.pdf_hash)

    result = runner.invoke(main.cli, ["inspect-book", "dom-casmurro"])

    assert result.exit_code == 0, result.output
    assert "running (resumable)" in result.output
    assert "completed" in result.output


def test_inspect_chunk(runner, cli_env, book_pdf, db):
    _ingest(runner, book_pdf)
    book = db.get_active_book("dom-casmurro")
    chunk_id = chunk_row_id(book.id, sorted(db.get_chunk_hashes(book.id))[0])

    result = runner.invoke(main.cli, ["inspect-chunk", chunk_id])

    assert result.exit_code == 0, result.output
    assert chunk_id in result.output
    assert "Dom Casmurro (dom-casmurro)" in result.output
    assert "harbour" in result.output


def test_inspect_unknown_chunk(runner, cli_env):
    result = runner.invoke(main.cli, ["inspect-chunk", "no-such-chunk"])

    assert result.exit_code == 1
    assert "Chunk not found" in result.output


def test_health(runner, cli_env):
    result = runner.invoke(main.cli, ["health"])

    assert result.exit_code == 0
    assert "database reachable" in result.output
