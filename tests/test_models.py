"""Tests for Pydantic models."""

from llamawatch.query.models import (
    Chunk,
    ChunkMetadata,
    Document,
    HealthResponse,
    QueryRequest,
    QueryResponse,
    SourcesEvent,
    TokenEvent,
)


class TestChunk:
    """Tests for Chunk model."""

    def test_create_chunk_with_defaults(self):
        """Test a chunk without embedding or metadata."""
        chunk = Chunk(id="c1", content="text")

        assert chunk.embedding is None
        assert chunk.metadata.source == ""
        assert chunk.metadata.page_number is None

    def test_decode_vector_db_record(self):
        """Test decoding the record shape returned by the vector database."""
        chunk = Chunk.model_validate({
            "id": "c1",
            "content": "text",
            "metadata": {"source": "a.pdf", "page_number": 3, "chunk_number": 2, "total_chunks": 4},
        })

        assert chunk.metadata == ChunkMetadata(
            source="a.pdf", page_number=3, chunk_number=2, total_chunks=4
        )

    def test_missing_fields_default_to_empty(self):
        """Test decoding a record without id or content."""
        chunk = Chunk.model_validate({"metadata": {"source": "a.pdf"}})

        assert chunk.id == ""
        assert chunk.content == ""
        assert chunk.metadata.source == "a.pdf"


class TestDocument:
    """Tests for Document model."""

    def test_page_count_optional(self):
        """Test documents without a page count."""
        document = Document(id="d1", name="notes.txt", type="txt")

        assert document.page_count is None
        assert document.chunks == []


class TestQueryModels:
    """Tests for query request and response models."""

    def test_missing_query_defaults_to_empty(self):
        """Test that a missing query decodes as empty."""
        assert QueryRequest.model_validate({}).query == ""

    def test_response_serialization(self):
        """Test query response serializes to dict."""
        response = QueryResponse(answer="42", sources=["a.pdf"])

        assert response.model_dump() == {"answer": "42", "sources": ["a.pdf"]}


class TestStreamEvents:
    """Tests for server-sent event payloads."""

    def test_sources_event(self):
        """Test sources event type tag."""
        event = SourcesEvent(sources=["a.pdf"])

        assert event.model_dump() == {"type": "sources", "sources": ["a.pdf"]}

    def test_token_event(self):
        """Test token event type tag."""
        event = TokenEvent(text="Hi", done=True)

        assert event.model_dump() == {"type": "token", "text": "Hi", "done": True}


class TestHealthResponse:
    """Tests for HealthResponse model."""

    def test_create_health_response(self):
        """Test creating health response."""
        response = HealthResponse(status="healthy", monitoring="enabled", timestamp=1700000000)

        assert response.status == "healthy"
        assert response.monitoring == "enabled"
