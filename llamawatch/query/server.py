"""FastAPI server for the RAG service."""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import structlog
import uvicorn
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ValidationError

from llamawatch.common.config import RAGSettings, load_rag_settings
from llamawatch.common.errors import (
    DecodeError,
    EmbeddingStoreError,
    InferenceError,
    InputValidationError,
    RetrievalError,
    TracerInitError,
    UnsupportedTypeError,
)
from llamawatch.common.log import configure_logging
from llamawatch.ingestion.extractors import PyPDFExtractor
from llamawatch.ingestion.pipeline import DocumentIngestor
from llamawatch.monitor.inference import (
    InferenceMonitor,
    ModelConfig,
    MonitoringMiddleware,
    build_monitor,
    fetch_model_config,
)
from llamawatch.monitor.metrics import MetricRegistry
from llamawatch.query.llm_client import LlamaCppClient
from llamawatch.query.models import (
    Chunk,
    DocumentInfo,
    HealthResponse,
    QueryRequest,
    QueryResponse,
    ReadinessResponse,
    SourcesEvent,
    TokenEvent,
    UploadResponse,
)
from llamawatch.query.rag_chain import RAGOrchestrator, get_sources
from llamawatch.query.retriever import Retriever
from llamawatch.query.stream import StreamSession
from llamawatch.storage.vector_store import VectorStoreClient

logger = structlog.get_logger()

PDF_CONTENT_TYPES = ("application/pdf", "application/x-pdf")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

_END_OF_STREAM = object()


def is_allowed_content_type(content_type: Optional[str]) -> bool:
    """PDF or any text/* media type."""
    media_type = (content_type or "").split(";")[0].strip().lower()
    return media_type in PDF_CONTENT_TYPES or media_type.startswith("text/")


def validate_upload(content: bytes, content_type: Optional[str], limit: int):
    """
    Check an upload against the size cap and allowed content types.

    Raises:
        InputValidationError: If the upload is too large or of a disallowed type
    """
    if len(content) > limit:
        raise InputValidationError(f"File exceeds maximum upload size of {limit} bytes")
    if not is_allowed_content_type(content_type):
        raise InputValidationError(f"Unsupported content type: {content_type}")


def require_query(query: str) -> str:
    if not query.strip():
        raise InputValidationError("Query cannot be empty")
    return query


def format_sse(event: BaseModel) -> str:
    return f"data: {event.model_dump_json()}\n\n"


async def sse_events(
    orchestrator: RAGOrchestrator,
    query: str,
    chunks: List[Chunk]
) -> AsyncIterator[str]:
    """
    Yield the sources event followed by token events.

    Tokens are produced on a separate task and handed over through a queue,
    so they are written in generation order from the response task. Closing
    the generator cancels the producer. Failures after the first event are
    logged and truncate the stream.
    """
    session = StreamSession()
    queue: asyncio.Queue = asyncio.Queue()

    yield format_sse(SourcesEvent(sources=get_sources(chunks)))
    session.sources_sent()

    async def on_token(text: str, done: bool):
        await queue.put(TokenEvent(text=text, done=done))

    async def produce():
        try:
            await orchestrator.query_streaming(query, on_token, chunks=chunks)
        finally:
            queue.put_nowait(_END_OF_STREAM)

    producer = asyncio.create_task(produce())
    try:
        while True:
            event = await queue.get()
            if event is _END_OF_STREAM:
                break
            yield format_sse(event)
            session.token_sent(event.done)
            if event.done:
                break
        await producer
    except asyncio.CancelledError:
        session.cancel()
        raise
    except Exception as e:
        session.fail(e)
    finally:
        if not producer.done():
            session.cancel()
            producer.cancel()


def create_app(
    settings: RAGSettings,
    orchestrator: RAGOrchestrator,
    ingestor: DocumentIngestor,
    monitor: Optional[InferenceMonitor] = None,
    registry: Optional[MetricRegistry] = None,
    model_config_loader: Optional[Callable[[], Awaitable[ModelConfig]]] = None,
    shutdown_hooks: Sequence[Callable[[], Awaitable[None]]] = ()
) -> FastAPI:
    """
    Build the RAG service application.

    Args:
        settings: Service configuration
        orchestrator: RAG orchestrator answering queries
        ingestor: Document ingestor for uploads
        monitor: Optional inference monitor bound to every request
        registry: Metric registry served on /metrics
        model_config_loader: Optional coroutine factory refreshing the
                             monitor's model configuration on startup
        shutdown_hooks: Coroutine factories awaited on shutdown
    """
    registry = registry if registry is not None else MetricRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting RAG service")

        if monitor is not None:
            if model_config_loader is not None:
                monitor.set_model_config(await model_config_loader())
            monitor.start()

        app.state.ready = True
        logger.info("RAG service initialized")
        yield

        logger.info("Shutting down RAG service")
        app.state.ready = False
        if monitor is not None:
            await monitor.stop()
            monitor.tracer.shutdown()
        for hook in shutdown_hooks:
            await hook()

    app = FastAPI(
        title="RAG Service",
        description="Retrieval-augmented generation over uploaded documents",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.ready = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    if monitor is not None:
        app.add_middleware(MonitoringMiddleware, monitor=monitor)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Invalid request", path=request.url.path, errors=str(exc.errors()))
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request body", "errors": jsonable_errors(exc)},
        )

    @app.post("/api/documents/upload", response_model=UploadResponse)
    async def upload_document(file: UploadFile = File(...)):
        """Ingest an uploaded PDF or text document."""
        limit = settings.max_upload_bytes
        content = await file.read(limit + 1)
        try:
            validate_upload(content, file.content_type, limit)
        except InputValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        filename = file.filename or ""
        logger.info("Uploading file", filename=filename, size=len(content))

        try:
            document = await ingestor.process(content, filename)
        except (UnsupportedTypeError, DecodeError) as e:
            raise HTTPException(status_code=400, detail=f"Failed to process file: {e}")
        except EmbeddingStoreError as e:
            logger.error("Failed to store document", filename=filename, error=str(e),
                         chunk_index=e.chunk_index)
            raise HTTPException(status_code=500, detail=f"Failed to process file: {e}")

        return UploadResponse(
            success=True,
            message="Document processed successfully",
            document=DocumentInfo(
                id=document.id,
                name=document.name,
                type=document.type,
                chunks_count=len(document.chunks),
            ),
        )

    @app.post("/api/rag/query", response_model=QueryResponse)
    async def query_rag(request: QueryRequest):
        """Answer a question using retrieved document context."""
        try:
            require_query(request.query)
        except InputValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            result = await orchestrator.query_blocking(request.query)
        except RetrievalError as e:
            logger.error("Retrieval failed", error=str(e))
            raise HTTPException(status_code=500, detail=f"Failed to retrieve context: {e}")
        except InferenceError as e:
            logger.error("Inference failed", error=str(e))
            raise HTTPException(status_code=500, detail=f"Failed to generate answer: {e}")

        return QueryResponse(answer=result.answer, sources=result.sources)

    @app.post("/api/rag/stream")
    async def stream_rag(request: QueryRequest):
        """Answer a question as a server-sent event stream."""
        try:
            require_query(request.query)
        except InputValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            chunks = await orchestrator.retrieve(request.query)
        except RetrievalError as e:
            logger.error("Retrieval failed", error=str(e))
            raise HTTPException(status_code=500, detail=f"Failed to retrieve context: {e}")

        return StreamingResponse(
            sse_events(orchestrator, request.query, chunks),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        if monitor is None:
            monitoring = "off"
        else:
            monitoring = "enabled" if monitor.enabled else "disabled"
        return HealthResponse(status="healthy", monitoring=monitoring, timestamp=int(time.time()))

    @app.get("/ready", response_model=ReadinessResponse)
    async def readiness_check():
        """Readiness check endpoint."""
        if not app.state.ready:
            return JSONResponse(
                status_code=503,
                content={"status": "not ready", "reason": "services not initialized"},
            )
        return ReadinessResponse(status="ready", timestamp=int(time.time()))

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(registry.render(), media_type=registry.content_type)

    return app


def jsonable_errors(exc: RequestValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}"
        for error in exc.errors()
    ]


def build_app(settings: RAGSettings) -> FastAPI:
    """
    Wire the production collaborators into an application.

    Raises:
        TracerInitError: If monitoring is enabled and the tracer cannot start
    """
    registry = MetricRegistry()
    vector_store = VectorStoreClient(settings.vector_db_url, timeout=settings.vector_db_timeout)
    llm_client = LlamaCppClient(settings.model_runner_url, settings.llm_model, timeout=settings.llm_timeout)

    ingestor = DocumentIngestor(
        settings.upload_dir,
        vector_store,
        PyPDFExtractor(),
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )
    orchestrator = RAGOrchestrator(
        Retriever(vector_store),
        llm_client,
        context_chunks=settings.context_chunks,
    )

    monitor = None
    model_config_loader = None
    if settings.monitoring_enabled:
        monitor = build_monitor(settings, registry)

        async def model_config_loader() -> ModelConfig:
            return await fetch_model_config(settings.model_runner_url, timeout=settings.stats_timeout)

    return create_app(
        settings,
        orchestrator,
        ingestor,
        monitor=monitor,
        registry=registry,
        model_config_loader=model_config_loader,
        shutdown_hooks=(vector_store.close, llm_client.close),
    )


def run():
    """RAG service entrypoint."""
    configure_logging()
    try:
        settings = load_rag_settings()
    except ValidationError as e:
        logger.error("Invalid RAG configuration", error=str(e))
        sys.exit(1)

    configure_logging(settings.log_level)
    try:
        app = build_app(settings)
    except TracerInitError as e:
        logger.error("RAG service startup failed", error=str(e))
        sys.exit(1)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        timeout_graceful_shutdown=10,
    )


if __name__ == "__main__":
    run()
