"""ChromaDB vector store operations."""
import chromadb
from chromadb.config import Settings
from typing import List, Dict, Any, Optional, Tuple
from pathlib import Path

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


class VectorStore:
    """Approximate nearest-neighbour search over chunk embeddings (cosine space)."""

    def __init__(
        self,
        chroma_path: Path = config.CHROMA_PATH,
        collection_name: str = config.CHROMA_COLLECTION,
        client: Optional[Any] = None
    ):
        """Initialize ChromaDB client and collection.

        Args:
            chroma_path: Path to ChromaDB persistence directory
            collection_name: Collection holding every book's chunks
            client: Pre-built Chroma client, e.g. an EphemeralClient in tests
        """
        self.client = client or chromadb.PersistentClient(
            path=str(chroma_path),
            settings=Settings(anonymized_telemetry=False)
        )
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"}
        )
        logger.debug(f"Vector store ready: {collection_name}")

    def upsert(
        self,
        ids: List[str],
        embeddings: List[List[float]],
        metadatas: List[Dict[str, Any]]
    ) -> None:
        """Store embeddings keyed by chunk id; re-writing an id is harmless.

        Args:
            ids: Chunk row ids
            embeddings: One vector per id
            metadatas: Must carry 'book_id' for filtering
        """
        if not ids:
            return
        self.collection.upsert(ids=ids, embeddings=embeddings, metadatas=metadatas)
        logger.debug(f"Upserted {len(ids)} embeddings")

    def query(
        self,
        query_embedding: List[float],
        n_results: int,
        book_ids: List[str],
        similarity_threshold: float
    ) -> List[Tuple[str, float]]:
        """Top-N chunk ids by cosine similarity within the allowed books.

        Args:
            query_embedding: Query vector
            n_results: Result cap
            book_ids: Allow-list of book ids; empty means nothing is searchable
            similarity_threshold: Similarity floor

        Returns:
            (chunk_id, similarity) pairs, most similar first
        """
        if not book_ids or self.collection.count() == 0:
            return []

        where = {"book_id": book_ids[0]} if len(book_ids) == 1 else {"book_id": {"$in": book_ids}}
        results = self.collection.query(
            query_embeddings=[query_embedding],
            n_results=n_results,
            where=where,
            include=["distances"]
        )

        matches = []
        if results['ids'] and results['ids'][0]:
            for chunk_id, distance in zip(results['ids'][0], results['distances'][0]):
                similarity = 1.0 - distance
                if similarity >= similarity_threshold:
                    matches.append((chunk_id, min(1.0, max(0.0, similarity))))

        matches.sort(key=lambda match: match[1], reverse=True)
        return matches

    def count(self) -> int:
        return self.collection.count()
