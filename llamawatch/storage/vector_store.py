"""HTTP client for the document vector database."""

from typing import List, Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from llamawatch.common.errors import EmbeddingStoreError, RetrievalError, body_snippet
from llamawatch.query.models import Chunk

logger = structlog.get_logger()

COLLECTION = "documents"

# Status codes accepted when storing a chunk
STORE_OK = (200, 201)


class _QueryResult(BaseModel):
    results: List[Chunk] = []


class VectorStoreClient:
    """Stores chunks in and queries chunks from the vector database."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the vector store client.

        Args:
            base_url: Vector database server URL
            timeout: Per-request timeout in seconds
            client: Optional pre-configured HTTP client (for testing)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def points_url(self) -> str:
        return f"{self.base_url}/api/collections/{COLLECTION}/points"

    @property
    def query_url(self) -> str:
        return f"{self.base_url}/api/collections/{COLLECTION}/query"

    async def upsert_chunk(self, chunk: Chunk, document_id: str, index: int, total: int):
        """
        Store one chunk.

        Args:
            chunk: Chunk to store
            document_id: Owning document id
            index: Zero-based position of the chunk, used in errors and logs
            total: Number of chunks in the document

        Raises:
            EmbeddingStoreError: On transport failure or a status other than 200/201
        """
        payload = {
            "id": chunk.id,
            "text": chunk.content,
            "metadata": chunk.metadata.model_dump(exclude_none=True),
            "document_id": document_id,
        }

        try:
            response = await self._client.post(self.points_url, json=payload)
        except httpx.HTTPError as e:
            raise EmbeddingStoreError(
                f"failed to store chunk {index}: {e}", chunk_index=index
            ) from e

        if response.status_code not in STORE_OK:
            raise EmbeddingStoreError(
                f"failed to store chunk {index}, status: {response.status_code}, "
                f"body: {body_snippet(response.text)}",
                chunk_index=index,
            )

        logger.debug("Stored chunk", document_id=document_id, chunk=index + 1, total=total)

    async def query(self, query_text: str, limit: int) -> List[Chunk]:
        """
        Retrieve the chunks most relevant to `query_text`.

        Raises:
            RetrievalError: On transport failure, non-2xx status or a malformed body
        """
        payload = {"query_text": query_text, "n_results": limit}

        try:
            response = await self._client.post(self.query_url, json=payload)
        except httpx.HTTPError as e:
            raise RetrievalError(f"failed to query vector database: {e}") from e

        if not response.is_success:
            raise RetrievalError(
                f"vector DB query failed, status: {response.status_code}, "
                f"body: {body_snippet(response.text)}"
            )

        try:
            return _QueryResult.model_validate_json(response.content).results
        except ValidationError as e:
            raise RetrievalError(f"failed to decode vector DB response: {e}") from e

    async def close(self):
        await self._client.aclose()
