"""Pytest configuration for all tests."""

import json
import os

import httpx
import pytest
import structlog


ENGINE_STATS = {
    "memory": {
        "used_bytes": 1024,
        "total_bytes": 4096,
        "kv_cache_bytes": 256,
        "kv_cache_max_bytes": 1024,
    },
    "performance": {"tokens_per_second": 42.5, "cpu_utilization": 75.0},
    "model": {
        "name": "m",
        "size_bytes": 100,
        "parameters": 7,
        "context_size": 128,
        "max_context_size": 2048,
    },
    "batch": {"size": 8, "optimal_size": 16, "latency_ms": 5},
    "system": {"threads": 4, "status": "running"},
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove configuration variables inherited from the host environment."""
    for name in list(os.environ):
        if name.startswith(("LLAMACPP_", "RAG_")) or name == "MODEL_RUNNER_URL":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_structlog():
    """Give every test structlog's default configuration."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture
def engine_stats():
    return json.loads(json.dumps(ENGINE_STATS))


@pytest.fixture
def sample_exporter_env(monkeypatch):
    """Set exporter environment variables."""
    monkeypatch.setenv("LLAMACPP_BASE_URL", "http://engine:8080/v1/")
    monkeypatch.setenv("LLAMACPP_MODEL", "llama-3b")
    monkeypatch.setenv("LLAMACPP_EXPORTER_ADDR", "127.0.0.1:9200")
    monkeypatch.setenv("LLAMACPP_SCRAPE_INTERVAL", "1m30s")
    monkeypatch.setenv("LLAMACPP_CLIENT_TIMEOUT", "500ms")


@pytest.fixture
def sample_rag_env(monkeypatch):
    """Set RAG service environment variables."""
    monkeypatch.setenv("MODEL_RUNNER_URL", "http://runner:12434/engines/llama.cpp/v1")
    monkeypatch.setenv("RAG_VECTOR_DB_URL", "http://test-vectordb:8000")
    monkeypatch.setenv("RAG_CHUNK_SIZE", "500")
    monkeypatch.setenv("RAG_CHUNK_OVERLAP", "50")
    monkeypatch.setenv("RAG_COLLECTION_INTERVAL", "30s")
    monkeypatch.setenv("RAG_MONITORING_ENABLED", "false")


class FakeVectorDB:
    """
    httpx MockTransport handler standing in for the vector database.

    Stored points are kept in `points`; queries return `results`.
    """

    def __init__(self, results=None, store_status=201, query_status=200):
        self.results = list(results or [])
        self.store_status = store_status
        self.query_status = query_status
        self.points = []
        self.queries = []

    def __call__(self, request):
        body = json.loads(request.content)
        if request.url.path.endswith("/points"):
            self.points.append(body)
            return httpx.Response(self.store_status, text="" if self.store_status < 300 else "store failed")
        self.queries.append(body)
        if self.query_status >= 300:
            return httpx.Response(self.query_status, text="query failed")
        return httpx.Response(200, json={"results": self.results[:body["n_results"]]})


class ScriptedLLM:
    """LLM client that answers with a fixed completion or token script."""

    def __init__(self, answer="Generated answer", tokens=("Hello", " world"), error=None):
        self.answer = answer
        self.tokens = tokens
        self.error = error
        self.prompts = []

    async def generate_completion(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer

    async def generate_stream(self, prompt, callback):
        self.prompts.append(prompt)
        for token in self.tokens:
            await callback(token, False)
        if self.error is not None:
            raise self.error
        await callback("", True)

    async def close(self):
        pass


class StubPDFExtractor:
    def __init__(self, text="alpha beta gamma", pages=1):
        self.text = text
        self.pages = pages

    def extract(self, data):
        return self.text, self.pages


@pytest.fixture
def rag_app_factory(tmp_path):
    """Build a RAG app over fake collaborators; returns (app, vectordb, llm)."""
    from llamawatch.common.config import RAGSettings
    from llamawatch.ingestion.pipeline import DocumentIngestor
    from llamawatch.query.rag_chain import RAGOrchestrator
    from llamawatch.query.retriever import Retriever
    from llamawatch.query.server import create_app
    from llamawatch.storage.vector_store import VectorStoreClient

    def factory(results=(), store_status=201, query_status=200, answer="Generated answer",
                tokens=("Hello", " world"), llm_error=None, monitor=None, registry=None,
                model_config_loader=None, **settings_overrides):
        vectordb = FakeVectorDB(results, store_status, query_status)
        llm = ScriptedLLM(answer, tokens, llm_error)
        settings = RAGSettings(upload_dir=str(tmp_path / "uploads"), **settings_overrides)
        store = VectorStoreClient(
            settings.vector_db_url,
            client=httpx.AsyncClient(transport=httpx.MockTransport(vectordb)),
        )
        ingestor = DocumentIngestor(
            settings.upload_dir,
            store,
            StubPDFExtractor(),
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )
        orchestrator = RAGOrchestrator(Retriever(store), llm, context_chunks=settings.context_chunks)
        app = create_app(
            settings,
            orchestrator,
            ingestor,
            monitor=monitor,
            registry=registry,
            model_config_loader=model_config_loader,
        )
        return app, vectordb, llm

    return factory

