"""Top-k chunk retrieval from the vector database."""

from typing import List

import structlog

from llamawatch.query.models import Chunk
from llamawatch.storage.vector_store import VectorStoreClient

logger = structlog.get_logger()

DEFAULT_LIMIT = 5


class Retriever:
    """Fetches the chunks most relevant to a query. No local re-ranking."""

    def __init__(self, vector_store: VectorStoreClient, default_limit: int = DEFAULT_LIMIT):
        self.vector_store = vector_store
        self.default_limit = default_limit

    async def retrieve(self, query: str, limit: int = 0) -> List[Chunk]:
        """
        Retrieve up to `limit` chunks; a limit of 0 or less uses the default.

        Raises:
            RetrievalError: If the vector database query fails
        """
        if limit <= 0:
            limit = self.default_limit

        chunks = await self.vector_store.query(query, limit)

        sources = []
        for chunk in chunks:
            if chunk.metadata.source not in sources:
                sources.append(chunk.metadata.source)
        logger.debug("RAG retrieval",
                     query=query,
                     chunk_ids=[chunk.id for chunk in chunks],
                     sources=sources)
        return chunks
