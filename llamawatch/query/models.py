"""Pydantic models for documents, chunks and the RAG service API."""

from typing import List, Optional

from pydantic import BaseModel, Field


class ChunkMetadata(BaseModel):
    source: str = ""
    page_number: Optional[int] = None
    chunk_number: int = 0
    total_chunks: int = 0


class Chunk(BaseModel):
    # Vector database records may omit either field
    id: str = ""
    content: str = ""
    # Absent until an embedding has been computed
    embedding: Optional[List[float]] = None
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class Document(BaseModel):
    id: str
    name: str
    type: str
    chunks: List[Chunk] = Field(default_factory=list)
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    page_count: Optional[int] = None


class QueryRequest(BaseModel):
    query: str = ""


class QueryResponse(BaseModel):
    answer: str
    sources: List[str]


class DocumentInfo(BaseModel):
    id: str
    name: str
    type: str
    chunks_count: int


class UploadResponse(BaseModel):
    success: bool
    message: str
    document: DocumentInfo


class SourcesEvent(BaseModel):
    type: str = "sources"
    sources: List[str]


class TokenEvent(BaseModel):
    type: str = "token"
    text: str
    done: bool


class HealthResponse(BaseModel):
    status: str
    monitoring: str
    timestamp: int


class ReadinessResponse(BaseModel):
    status: str
    timestamp: int
