"""LLM clients for the RAG orchestrator."""

import json
from typing import Awaitable, Callable, Optional, Protocol

import httpx
import structlog

from llamawatch.common.errors import InferenceError, body_snippet

logger = structlog.get_logger()

# Receives (text, done); done=True marks the final event of a stream
StreamCallback = Callable[[str, bool], Awaitable[None]]


class LLMClient(Protocol):
    """Completion capability the orchestrator depends on."""

    async def generate_completion(self, prompt: str) -> str:
        ...

    async def generate_stream(self, prompt: str, callback: StreamCallback) -> None:
        ...


class LlamaCppClient:
    """
    OpenAI-compatible chat completions client for the llama.cpp model runner.

    Streaming responses are server-sent events; each `data:` line carries a
    chunk whose `choices[0].delta.content` is forwarded to the callback, and
    `data: [DONE]` ends the stream.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Model runner base URL (e.g. .../engines/llama.cpp/v1)
            model: Model identifier sent with every request
            timeout: Per-request timeout in seconds
            client: Optional pre-configured HTTP client (for testing)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

        logger.info("LLM client initialized", base_url=self.base_url, model=model)

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _payload(self, prompt: str, stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }

    async def generate_completion(self, prompt: str) -> str:
        """
        Generate a full completion for `prompt`.

        Raises:
            InferenceError: On transport failure, non-2xx status or a malformed body
        """
        try:
            response = await self._client.post(
                self.completions_url, json=self._payload(prompt, stream=False)
            )
        except httpx.HTTPError as e:
            raise InferenceError(f"failed to generate completion: {e}") from e

        if not response.is_success:
            raise InferenceError(
                f"completion request failed, status: {response.status_code}, "
                f"body: {body_snippet(response.text)}"
            )

        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise InferenceError(f"failed to decode completion: {e}") from e

    async def generate_stream(self, prompt: str, callback: StreamCallback) -> None:
        """
        Stream a completion, invoking `callback(text, done)` per event in order.

        The final callback is always ("", True). Exceptions raised by the
        callback propagate unchanged and stop the stream.

        Raises:
            InferenceError: On transport failure, non-2xx status or a malformed event
        """
        request = self._client.stream(
            "POST", self.completions_url, json=self._payload(prompt, stream=True)
        )
        try:
            async with request as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise InferenceError(
                        f"stream request failed, status: {response.status_code}, "
                        f"body: {body_snippet(body)}"
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    text = self._delta_text(data)
                    if text:
                        await callback(text, False)
        except httpx.HTTPError as e:
            raise InferenceError(f"failed to stream completion: {e}") from e

        await callback("", True)

    @staticmethod
    def _delta_text(data: str) -> str:
        try:
            event = json.loads(data)
            choices = event.get("choices") or []
            if not choices:
                return ""
            return (choices[0].get("delta") or {}).get("content") or ""
        except (ValueError, AttributeError) as e:
            raise InferenceError(f"failed to decode stream event: {e}") from e

    async def close(self):
        await self._client.aclose()
