"""Embedding service clients."""
import abc
from typing import List, Optional

import httpx
from openai import OpenAI
from pydantic import BaseModel

from ingestion.tokenizer import count_tokens
from utils.errors import DependencyError, InputError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class QueryEmbedding(BaseModel):
    vector: List[float]
    tokens: int


class BatchEmbedding(BaseModel):
    vectors: List[List[float]]  # Same order as the input texts
    tokens: int


class EmbeddingClient(abc.ABC):
    """Turns text into vectors and reports the token cost of doing so."""

    max_batch_size: int = config.EMBEDDING_BATCH_SIZE

    @abc.abstractmethod
    def embed(self, text: str) -> QueryEmbedding:
        """Embed a single string."""
        pass

    @abc.abstractmethod
    def embed_batch(self, texts: List[str]) -> BatchEmbedding:
        """Embed up to max_batch_size strings, returning vectors in input order."""
        pass

    def _check_batch(self, texts: List[str]) -> None:
        if len(texts) > self.max_batch_size:
            raise InputError(
                f"Embedding batch of {len(texts)} exceeds the limit of {self.max_batch_size}"
            )


class OpenAIEmbeddingClient(EmbeddingClient):
    """Embeddings from the OpenAI API."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model: str = config.OPENAI_EMBEDDING_MODEL,
        dimensions: int = config.EMBEDDING_DIMENSIONS
    ):
        if client is None:
            if not config.OPENAI_API_KEY:
                raise InputError("OPENAI_API_KEY not set in environment")
            client = OpenAI(
                api_key=config.OPENAI_API_KEY,
                timeout=httpx.Timeout(120.0, connect=10.0),
                max_retries=0,  # Rate limits are retried by RetryHandler
            )
        self.client = client
        self.model = model
        self.dimensions = dimensions

    def embed(self, text: str) -> QueryEmbedding:
        response = self.client.embeddings.create(
            model=self.model,
            input=text.strip(),
            dimensions=self.dimensions,
        )
        return QueryEmbedding(
            vector=response.data[0].embedding,
            tokens=response.usage.total_tokens,
        )

    def embed_batch(self, texts: List[str]) -> BatchEmbedding:
        self._check_batch(texts)
        if not texts:
            return BatchEmbedding(vectors=[], tokens=0)

        response = self.client.embeddings.create(
            model=self.model,
            input=[text.strip() for text in texts],
            dimensions=self.dimensions,
        )
        if len(response.data) != len(texts):
            raise DependencyError(
                f"Embedding API returned {len(response.data)} embeddings for {len(texts)} inputs"
            )

        # Provider order is not guaranteed; realign on the declared index
        ordered = sorted(response.data, key=lambda item: item.index)
        logger.debug(f"Embedded {len(texts)} texts ({response.usage.total_tokens} tokens)")
        return BatchEmbedding(
            vectors=[item.embedding for item in ordered],
            tokens=response.usage.total_tokens,
        )


class LocalEmbeddingClient(EmbeddingClient):
    """Embeddings computed locally with sentence-transformers.

    Token cost is reported with the shared tokenizer so usage numbers stay
    comparable with the hosted provider.
    """

    def __init__(self, model_name: str = config.LOCAL_EMBEDDING_MODEL, model=None):
        if model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {model_name}")
            model = SentenceTransformer(model_name)
        self.model = model

    def embed(self, text: str) -> QueryEmbedding:
        text = text.strip()
        vector = self.model.encode([text], normalize_embeddings=True)[0].tolist()
        return QueryEmbedding(vector=vector, tokens=count_tokens(text))

    def embed_batch(self, texts: List[str]) -> BatchEmbedding:
        self._check_batch(texts)
        if not texts:
            return BatchEmbedding(vectors=[], tokens=0)

        texts = [text.strip() for text in texts]
        vectors = self.model.encode(texts, normalize_embeddings=True).tolist()
        return BatchEmbedding(
            vectors=vectors,
            tokens=sum(count_tokens(text) for text in texts),
        )


def create_embedding_client(provider: str = config.EMBEDDING_PROVIDER) -> EmbeddingClient:
    """Build the embedding client selected by configuration."""
    if provider == "openai":
        return OpenAIEmbeddingClient()
    if provider == "local":
        return LocalEmbeddingClient()
    raise InputError(f"Unknown embedding provider: {provider}")
