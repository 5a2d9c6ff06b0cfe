"""Error taxonomy shared by the exporter and the RAG service."""

from typing import Optional


class LlamaWatchError(Exception):
    """Base exception for llamawatch errors."""
    pass


class NetworkError(LlamaWatchError):
    """Transport-level failure talking to a collaborator."""
    pass


class BadStatusError(LlamaWatchError):
    """A collaborator answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "", url: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.url = url
        message = f"unexpected status code: {status_code}"
        if url:
            message = f"{message} from {url}"
        if body:
            message = f"{message}, body: {body}"
        super().__init__(message)


class DecodeError(LlamaWatchError):
    """A payload could not be decoded into the expected shape."""
    pass


class InputValidationError(LlamaWatchError):
    """Inbound request data failed validation (empty query, oversized upload, ...)."""
    pass


class UnsupportedTypeError(LlamaWatchError):
    """Uploaded document type has no extractor."""
    pass


class RetrievalError(LlamaWatchError):
    """Vector database query failed."""
    pass


class EmbeddingStoreError(LlamaWatchError):
    """Storing a chunk in the vector database failed."""

    def __init__(self, message: str, chunk_index: Optional[int] = None):
        self.chunk_index = chunk_index
        super().__init__(message)


class InferenceError(LlamaWatchError):
    """The LLM engine failed to produce a completion."""
    pass


class ExporterStartupError(LlamaWatchError):
    """The exposition server could not start (e.g. bind failure)."""
    pass


class TracerInitError(LlamaWatchError):
    """The tracing pipeline could not be constructed."""
    pass


class MonitorError(LlamaWatchError):
    """Inference monitor lifecycle error."""
    pass


def body_snippet(body: str, limit: int = 200) -> str:
    """Trim a response body for inclusion in error messages."""
    body = body.strip()
    if len(body) <= limit:
        return body
    return body[:limit] + "..."
