"""
Vector Store Infrastructure
============================

Vector index over knowledge article embeddings.

The article row in the database is the source of truth for embeddings; the
index is a rebuildable projection of published articles, keyed by article id.

Implementations:
- InMemoryVectorStore: numpy cosine similarity, warmed from the article store
- MilvusVectorStore: Zilliz Cloud (managed Milvus), COSINE metric
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from pymilvus import MilvusClient

from kb_learning.config import settings
from kb_learning.core import VectorStoreException


@dataclass
class IndexedArticle:
    """Article projection stored in the vector index."""
    id: str
    embedding: List[float]
    metadata: dict = field(default_factory=dict)


@dataclass
class SearchResult:
    """Result from vector search. Score is cosine similarity clamped to [0, 1]."""
    id: str
    score: float
    metadata: dict = field(default_factory=dict)


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


class IVectorStore(ABC):
    """Interface for vector index operations."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the vector store."""

    @abstractmethod
    async def get_document_count(self) -> int:
        """Get number of indexed articles."""

    @abstractmethod
    async def upsert(self, articles: List[IndexedArticle]) -> None:
        """Insert or replace articles by id."""

    @abstractmethod
    async def delete(self, article_ids: List[str]) -> None:
        """Remove articles from the index. Unknown ids are ignored."""

    @abstractmethod
    async def search(self, query_embedding: List[float], top_k: int = 5) -> List[SearchResult]:
        """Return up to top_k nearest articles, best first."""


class InMemoryVectorStore(IVectorStore):
    """
    Process-local vector index using numpy.

    Suitable for a single-process deployment; it is rebuilt from the
    article store on startup.
    """

    def __init__(self):
        self._vectors: Dict[str, np.ndarray] = {}
        self._metadata: Dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def get_document_count(self) -> int:
        return len(self._vectors)

    async def upsert(self, articles: List[IndexedArticle]) -> None:
        async with self._lock:
            for article in articles:
                vector = np.asarray(article.embedding, dtype=np.float64)
                norm = np.linalg.norm(vector)
                if norm == 0:
                    raise VectorStoreException(f"Zero embedding for article {article.id}")
                self._vectors[article.id] = vector / norm
                self._metadata[article.id] = dict(article.metadata)

    async def delete(self, article_ids: List[str]) -> None:
        async with self._lock:
            for article_id in article_ids:
                self._vectors.pop(article_id, None)
                self._metadata.pop(article_id, None)

    async def search(self, query_embedding: List[float], top_k: int = 5) -> List[SearchResult]:
        query = np.asarray(query_embedding, dtype=np.float64)
        norm = np.linalg.norm(query)
        if norm == 0 or not self._vectors:
            return []
        query = query / norm

        async with self._lock:
            ids = list(self._vectors)
            matrix = np.vstack([self._vectors[i] for i in ids])
            metadata = {i: self._metadata[i] for i in ids}

        scores = matrix @ query
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            SearchResult(id=ids[i], score=_clamp(scores[i]), metadata=metadata[ids[i]])
            for i in order
        ]


class MilvusVectorStore(IVectorStore):
    """
    Zilliz Cloud (Managed Milvus) implementation of the vector index.

    The collection uses string primary keys (article UUIDs) and the COSINE
    metric. pymilvus is synchronous; calls run in a worker thread.

    For correct connection, find your cluster's Public Endpoint in the
    Zilliz Cloud Console, e.g.
    https://inxxxxxxxxxxxxxxxxx.aws-us-west-2.vectordb-uat3.zillizcloud.com
    """

    def __init__(
        self,
        collection_name: Optional[str] = None,
        uri: Optional[str] = None,
        api_key: Optional[str] = None
    ):
        self._collection_name = collection_name or settings.milvus_collection_name
        self._dimension = settings.embedding_dimension
        self._uri = uri or settings.zilliz_uri
        self._api_key = api_key or settings.zilliz_api_key
        self._client: Optional[MilvusClient] = None

    async def initialize(self) -> None:
        """Connect and create the collection if it does not exist."""
        if self._client is not None:
            return

        if not self._uri or not self._api_key:
            raise VectorStoreException("ZILLIZ_URI and ZILLIZ_API_KEY must be configured")

        try:
            client = MilvusClient(uri=self._uri, token=self._api_key)
            exists = await asyncio.to_thread(client.has_collection, self._collection_name)
            if not exists:
                await asyncio.to_thread(
                    client.create_collection,
                    collection_name=self._collection_name,
                    dimension=self._dimension,
                    primary_field_name="id",
                    id_type="string",
                    max_length=64,
                    vector_field_name="vector",
                    metric_type="COSINE",
                    auto_id=False,
                )
        except Exception as e:
            raise VectorStoreException(f"Failed to initialize Milvus: {str(e)}")

        self._client = client

    async def _ensure_client(self) -> MilvusClient:
        if self._client is None:
            await self.initialize()
        return self._client

    async def get_document_count(self) -> int:
        client = await self._ensure_client()
        try:
            stats = await asyncio.to_thread(client.get_collection_stats, self._collection_name)
        except Exception as e:
            raise VectorStoreException(f"Failed to read collection stats: {str(e)}")
        return int(stats.get("row_count", 0))

    async def upsert(self, articles: List[IndexedArticle]) -> None:
        if not articles:
            return
        client = await self._ensure_client()

        data = [
            {
                "id": article.id,
                "vector": article.embedding,
                "title": article.metadata.get("title", ""),
                "category": article.metadata.get("category", ""),
            }
            for article in articles
        ]
        try:
            await asyncio.to_thread(client.upsert, collection_name=self._collection_name, data=data)
        except Exception as e:
            raise VectorStoreException(f"Failed to upsert articles: {str(e)}")

    async def delete(self, article_ids: List[str]) -> None:
        if not article_ids:
            return
        client = await self._ensure_client()
        try:
            await asyncio.to_thread(client.delete, collection_name=self._collection_name, ids=article_ids)
        except Exception as e:
            raise VectorStoreException(f"Failed to delete articles: {str(e)}")

    async def search(self, query_embedding: List[float], top_k: int = 5) -> List[SearchResult]:
        client = await self._ensure_client()
        try:
            results = await asyncio.to_thread(
                client.search,
                collection_name=self._collection_name,
                data=[query_embedding],
                limit=top_k,
                output_fields=["title", "category"],
            )
        except Exception as e:
            raise VectorStoreException(f"Search failed: {str(e)}")

        if not results:
            return []
        return [
            SearchResult(
                id=str(hit["id"]),
                score=_clamp(hit["distance"]),
                metadata=dict(hit.get("entity") or {}),
            )
            for hit in results[0]
        ]


def create_vector_store() -> IVectorStore:
    """Milvus when Zilliz credentials are configured, otherwise in-memory."""
    if settings.zilliz_uri and settings.zilliz_api_key:
        return MilvusVectorStore()
    return InMemoryVectorStore()
