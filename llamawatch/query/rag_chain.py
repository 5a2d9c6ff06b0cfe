"""Retrieval-augmented generation over uploaded documents."""

from dataclasses import dataclass
from typing import List, Optional

import structlog

from llamawatch.monitor.inference import trace_chat
from llamawatch.query.llm_client import LLMClient, StreamCallback
from llamawatch.query.models import Chunk
from llamawatch.query.retriever import Retriever

logger = structlog.get_logger()


NO_CONTEXT_PROMPT_TEMPLATE = """You are a helpful AI assistant. Please answer the following question:

Question: {question}

Answer:"""

RAG_PROMPT_TEMPLATE = """You are a helpful AI assistant. Please answer the following question based only on the provided context information. If the context doesn't contain the answer, say that you don't have enough information to answer and avoid making up a response.

Context Information:
{context}

Question: {question}

Answer based on the context:"""


@dataclass
class RAGAnswer:
    answer: str
    sources: List[str]


def format_context(chunks: List[Chunk]) -> str:
    """Render chunks as numbered, delimited document blocks."""
    if not chunks:
        return ""

    parts = ["Relevant information from documents:\n\n"]
    for number, chunk in enumerate(chunks, start=1):
        parts.append(f"Document {number}: {chunk.metadata.source}\n")
        parts.append("---\n")
        parts.append(chunk.content)
        parts.append("\n---\n\n")
    return "".join(parts)


def build_prompt(query: str, chunks: List[Chunk]) -> str:
    """
    Build the LLM prompt for `query`.

    Without chunks the question is asked as-is; no context is fabricated.
    """
    context = format_context(chunks)
    if not context:
        return NO_CONTEXT_PROMPT_TEMPLATE.format(question=query)
    return RAG_PROMPT_TEMPLATE.format(context=context, question=query)


def get_sources(chunks: List[Chunk]) -> List[str]:
    """Distinct chunk sources in first-seen order."""
    sources = []
    seen = set()
    for chunk in chunks:
        source = chunk.metadata.source
        if source not in seen:
            seen.add(source)
            sources.append(source)
    return sources


def estimate_tokens(text: str) -> int:
    """Whitespace token estimate used for request metrics."""
    return len(text.split())


class RAGOrchestrator:
    """
    Answers questions with context retrieved from the vector database.

    LLM calls run inside trace_chat(), so request metrics and spans are
    recorded whenever the caller runs under MonitoringMiddleware.
    """

    def __init__(self, retriever: Retriever, llm_client: LLMClient, context_chunks: int = 3):
        """
        Initialize the orchestrator.

        Args:
            retriever: Chunk retriever
            llm_client: Completion backend
            context_chunks: Number of chunks placed in the prompt
        """
        self.retriever = retriever
        self.llm_client = llm_client
        self.context_chunks = context_chunks

    async def retrieve(self, query: str) -> List[Chunk]:
        """
        Retrieve prompt context for `query`.

        Raises:
            RetrievalError: If the vector database query fails
        """
        return await self.retriever.retrieve(query, self.context_chunks)

    async def query_blocking(self, query: str) -> RAGAnswer:
        """
        Answer `query` with a single completion.

        Raises:
            RetrievalError: If retrieval fails
            InferenceError: If the LLM fails
        """
        chunks = await self.retrieve(query)
        prompt = build_prompt(query, chunks)

        with trace_chat(estimate_tokens(prompt)) as inference:
            answer = await self.llm_client.generate_completion(prompt)
            inference.finish(output_tokens=estimate_tokens(answer))

        logger.info("RAG query answered", chunks_count=len(chunks))
        return RAGAnswer(answer=answer, sources=get_sources(chunks))

    async def query_streaming(
        self,
        query: str,
        callback: StreamCallback,
        chunks: Optional[List[Chunk]] = None
    ):
        """
        Answer `query` as a token stream.

        `callback(text, done)` is awaited for each event in generation order;
        nothing is forwarded after the done=True event. An exception raised by
        the callback stops the stream and propagates. Cancelling the calling
        task raises asyncio.CancelledError.

        Args:
            query: User question
            callback: Async event receiver
            chunks: Already-retrieved context; retrieved here when None

        Raises:
            RetrievalError: If retrieval fails
            InferenceError: If the LLM fails
        """
        if chunks is None:
            chunks = await self.retrieve(query)
        prompt = build_prompt(query, chunks)

        with trace_chat(estimate_tokens(prompt)) as inference:
            finished = False

            async def forward(text: str, done: bool):
                nonlocal finished
                if finished:
                    return
                inference.record_token(text)
                if done:
                    finished = True
                await callback(text, done)

            await self.llm_client.generate_stream(prompt, forward)
