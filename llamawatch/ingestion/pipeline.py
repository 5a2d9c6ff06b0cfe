"""Document ingestion: staging, text extraction, chunking and storage."""

import os
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from llamawatch.common.errors import UnsupportedTypeError
from llamawatch.ingestion.extractors import PDFExtractor
from llamawatch.query.models import Chunk, ChunkMetadata, Document
from llamawatch.storage.vector_store import VectorStoreClient

logger = structlog.get_logger()

SUPPORTED_TYPES = ("pdf", "txt")


def chunk_text(text: str, chunk_size: int = 1000, chunk_overlap: int = 200) -> List[str]:
    """
    Split text into overlapping character windows.

    Windows start every `chunk_size - chunk_overlap` characters and are at
    most `chunk_size` long; splitting stops once the end of the text has been
    emitted, so the last window may be shorter.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    if not 0 <= chunk_overlap < chunk_size:
        raise ValueError("chunk_overlap must satisfy 0 <= overlap < chunk_size")

    step = chunk_size - chunk_overlap
    pieces = []
    for start in range(0, len(text), step):
        end = min(start + chunk_size, len(text))
        pieces.append(text[start:end])
        if end == len(text):
            break
    return pieces


def build_chunks(text: str, source: str, chunk_size: int, chunk_overlap: int) -> List[Chunk]:
    """Chunk `text` and attach ids and numbering metadata."""
    pieces = chunk_text(text, chunk_size, chunk_overlap)
    return [
        Chunk(
            id=str(uuid.uuid4()),
            content=piece,
            metadata=ChunkMetadata(
                source=source,
                chunk_number=number,
                total_chunks=len(pieces),
            ),
        )
        for number, piece in enumerate(pieces, start=1)
    ]


def validate_chunks(chunks: List[Chunk], chunk_size: int):
    """
    Check ids are unique, numbering runs 1..n, every chunk reports n as its
    total and no chunk exceeds chunk_size.

    Raises:
        ValueError: On the first violated invariant
    """
    total = len(chunks)
    if len({chunk.id for chunk in chunks}) != total:
        raise ValueError("chunk ids are not unique")
    for expected, chunk in enumerate(chunks, start=1):
        if chunk.metadata.chunk_number != expected:
            raise ValueError(
                f"chunk numbered {chunk.metadata.chunk_number}, expected {expected}"
            )
        if chunk.metadata.total_chunks != total:
            raise ValueError(
                f"chunk {expected} reports {chunk.metadata.total_chunks} total chunks, expected {total}"
            )
        if len(chunk.content) > chunk_size:
            raise ValueError(f"chunk {expected} exceeds chunk size {chunk_size}")


def file_extension(filename: str) -> str:
    """Lowercase extension without the dot; empty if there is none."""
    return os.path.splitext(filename)[1][1:].lower()


class DocumentIngestor:
    """Turns uploaded files into chunks stored in the vector database."""

    def __init__(
        self,
        upload_dir: str,
        vector_store: VectorStoreClient,
        pdf_extractor: PDFExtractor,
        chunk_size: int = 1000,
        chunk_overlap: int = 200
    ):
        """
        Initialize the ingestor.

        Args:
            upload_dir: Staging directory for uploaded files
            vector_store: Destination for chunks
            pdf_extractor: Text extractor for PDF uploads
            chunk_size: Maximum characters per chunk
            chunk_overlap: Characters shared by consecutive chunks
        """
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must satisfy 0 <= overlap < chunk_size")

        self.upload_dir = Path(upload_dir)
        self.vector_store = vector_store
        self.pdf_extractor = pdf_extractor
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

        logger.info("Document ingestor initialized",
                    upload_dir=str(self.upload_dir),
                    chunk_size=chunk_size,
                    chunk_overlap=chunk_overlap)

    def _stage(self, document_id: str, extension: str, content: bytes) -> Path:
        self.upload_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        path = self.upload_dir / f"{document_id}.{extension}"
        path.write_bytes(content)
        return path

    def _extract(self, extension: str, path: Path, content: bytes) -> Tuple[str, Optional[int]]:
        if extension == "pdf":
            logger.info("Extracting text from PDF", path=str(path))
            return self.pdf_extractor.extract(content)
        return path.read_text(encoding="utf-8", errors="replace"), None

    async def process(self, content: bytes, filename: str) -> Document:
        """
        Ingest one uploaded file.

        Args:
            content: Raw file bytes
            filename: Client-supplied file name; only its base name and
                      extension are used

        Returns:
            The stored Document with its chunks

        Raises:
            UnsupportedTypeError: If the extension is not pdf or txt
            DecodeError: If the PDF cannot be read
            EmbeddingStoreError: If a chunk cannot be stored; later chunks are not attempted
        """
        name = os.path.basename(filename)
        extension = file_extension(name)
        if extension not in SUPPORTED_TYPES:
            raise UnsupportedTypeError(f"unsupported file type: {extension or '(none)'}")

        document_id = str(uuid.uuid4())
        path = self._stage(document_id, extension, content)

        text, page_count = self._extract(extension, path, content)
        chunks = build_chunks(text, name, self.chunk_size, self.chunk_overlap)
        validate_chunks(chunks, self.chunk_size)

        document = Document(
            id=document_id,
            name=name,
            type=extension,
            chunks=chunks,
            metadata=ChunkMetadata(source=name),
            page_count=page_count,
        )

        logger.info("Storing document chunks", document_id=document_id, chunks_count=len(chunks))
        for index, chunk in enumerate(chunks):
            await self.vector_store.upsert_chunk(chunk, document_id, index, len(chunks))

        logger.info("Document processed successfully",
                    document_id=document_id,
                    name=name,
                    type=extension,
                    chunks_count=len(chunks))
        return document
