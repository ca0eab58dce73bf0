import pytest

from embedding.retry_handler import RetryHandler
from ingestion.pipeline import IngestionPipeline
from storage.database import Database

from fakes import FakeEmbeddingClient, FakeExtractor, FakeVectorStore


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "library.db")


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_pipeline(db, vector_store, sleeps):
    """Build a pipeline over the shared db and vector store with small batches."""

    def _make(pages, client=None, batch_size=2):
        return IngestionPipeline(
            db,
            vector_store,
            client or FakeEmbeddingClient(),
            extractor=FakeExtractor(pages),
            retry_handler=RetryHandler(sleep=sleeps.append),
            batch_size=batch_size
        )

    return _make
