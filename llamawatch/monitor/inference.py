"""Request-level inference monitoring.

InferenceMonitor combines the inference metrics, the tracer and the engine
scrape loop behind one enable/disable switch. MonitoringMiddleware binds a
monitor to each HTTP request so handlers can call trace_chat() without
holding a reference to it; outside a monitored request trace_chat() returns a
no-op trace.
"""

import asyncio
import threading
import time
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Tuple

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import Span, Status, StatusCode

from llamawatch.common.config import RAGSettings
from llamawatch.common.errors import MonitorError
from llamawatch.monitor.metrics import InferenceMetrics, MetricRegistry
from llamawatch.monitor.scraper import ScrapeLoop
from llamawatch.monitor.stats_client import StatsClient
from llamawatch.monitor.tracing import LlamaCppTracer

logger = structlog.get_logger()

MIB = 1024 * 1024


@dataclass(frozen=True)
class ModelConfig:
    name: str = "unknown"
    size: str = "unknown"
    quantization: str = "unknown"
    context_size: int = 4096

    def model_info(self) -> Dict[str, str]:
        return {"name": self.name, "size": self.size, "quantization": self.quantization}

    def metric_labels(self) -> Dict[str, str]:
        return {
            "model_name": self.name,
            "model_size": self.size,
            "model_quantization": self.quantization,
        }


async def fetch_model_config(
    base_url: str,
    timeout: float = 3.0,
    client: Optional[httpx.AsyncClient] = None
) -> ModelConfig:
    """
    Read the loaded model's configuration from `<base_url>/info`.

    Any failure falls back to ModelConfig() and logs a warning.
    """
    url = f"{base_url.rstrip('/')}/info"
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    try:
        response = await client.get(url, timeout=timeout)
        response.raise_for_status()
        info = response.json().get("model_info") or {}
        defaults = ModelConfig()
        return ModelConfig(
            name=info.get("name") or defaults.name,
            size=info.get("size") or defaults.size,
            quantization=info.get("quantization") or defaults.quantization,
            context_size=int(info.get("context_size") or defaults.context_size),
        )
    except (httpx.HTTPError, ValueError, AttributeError, TypeError) as e:
        logger.warning("Failed to fetch model configuration, using defaults",
                       url=url,
                       error=str(e))
        return ModelConfig()
    finally:
        if owns_client:
            await client.aclose()


class InferenceMonitor:
    """
    Monitoring facade shared by every request.

    `enabled` and `model_config` are the only mutable fields and are guarded
    by one lock held for field access only.
    """

    def __init__(
        self,
        metrics: InferenceMetrics,
        tracer: LlamaCppTracer,
        collector: Optional[ScrapeLoop] = None,
        model_config: Optional[ModelConfig] = None
    ):
        self.metrics = metrics
        self.tracer = tracer
        self.collector = collector
        self._lock = threading.Lock()
        self._enabled = True
        self._model_config = model_config or ModelConfig()

    def _state(self) -> Tuple[bool, ModelConfig]:
        with self._lock:
            return self._enabled, self._model_config

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    @property
    def model_config(self) -> ModelConfig:
        with self._lock:
            return self._model_config

    def set_model_config(self, model_config: ModelConfig):
        with self._lock:
            self._model_config = model_config
        logger.info("Model configuration updated", **asdict(model_config))

    def trace_inference(
        self,
        input_tokens: int,
        context: Optional[Context] = None
    ) -> Tuple[Optional[Context], Span]:
        """Start an inference span, or return INVALID_SPAN while disabled."""
        enabled, model_config = self._state()
        if not enabled:
            return context, trace.INVALID_SPAN
        return self.tracer.trace_inference(model_config.model_info(), input_tokens, context)

    def record_inference_metrics(
        self,
        start_time: float,
        prefill_tokens: int,
        decode_tokens: int,
        first_token_time: Optional[float] = None
    ):
        """
        Commit metrics for one inference.

        Args:
            start_time: time.perf_counter() value taken when the request started
            prefill_tokens: Prompt tokens
            decode_tokens: Generated tokens
            first_token_time: time.perf_counter() value at the first streamed
                              token, or None if no token was observed
        """
        enabled, model_config = self._state()
        if not enabled:
            return

        now = time.perf_counter()
        first_token_latency = None
        if first_token_time is not None:
            first_token_latency = first_token_time - start_time

        self.metrics.record_inference(
            model_config.metric_labels(),
            latency=now - start_time,
            prefill_tokens=prefill_tokens,
            decode_tokens=decode_tokens,
            first_token_latency=first_token_latency,
        )

    def record_context_overflow(self):
        enabled, model_config = self._state()
        if enabled:
            self.metrics.record_context_overflow(model_config.metric_labels())

    def record_error(self, error_type: str):
        enabled, model_config = self._state()
        if enabled:
            self.metrics.record_error(model_config.metric_labels(), error_type)

    def enable(self):
        with self._lock:
            self._enabled = True
        logger.info("Inference monitoring enabled")

    def disable(self):
        """Turn every record operation into a no-op and stop engine scraping."""
        with self._lock:
            self._enabled = False
        if self.collector is not None:
            self.collector.cancel()
        logger.info("Inference monitoring disabled")

    def start(self):
        """
        Start scraping engine statistics.

        Raises:
            MonitorError: If the monitor is disabled
        """
        if not self.enabled:
            raise MonitorError("monitor is not enabled")
        if self.collector is not None:
            self.collector.start()

    async def stop(self):
        if self.collector is not None:
            await self.collector.stop()
            await self.collector.stats_client.close()


_current_monitor: ContextVar[Optional[InferenceMonitor]] = ContextVar(
    "llamawatch_inference_monitor", default=None
)


def get_monitor_from_context() -> Optional[InferenceMonitor]:
    """Return the monitor bound to the current request, if any."""
    return _current_monitor.get()


class MonitoringMiddleware:
    """ASGI middleware that binds an InferenceMonitor to each HTTP request."""

    def __init__(self, app, monitor: InferenceMonitor):
        self.app = app
        self.monitor = monitor

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        token = _current_monitor.set(self.monitor)
        try:
            await self.app(scope, receive, send)
        finally:
            _current_monitor.reset(token)


class InferenceTrace:
    """
    Tracks one LLM call from prompt submission to the final token.

    A trace created without a monitor does nothing.
    """

    def __init__(self, monitor: Optional[InferenceMonitor], input_tokens: int):
        self.monitor = monitor
        self.input_tokens = input_tokens
        self.start_time = time.perf_counter()
        self.first_token_time: Optional[float] = None
        self.tokens_seen = 0
        self.finished = False

        if monitor is None:
            self.context, self.span = None, trace.INVALID_SPAN
        else:
            self.context, self.span = monitor.trace_inference(input_tokens)

    def mark_first_token(self):
        """Record the arrival of the first token. Later calls are ignored."""
        if self.first_token_time is None:
            self.first_token_time = time.perf_counter()

    def record_token(self, text: str):
        """Note one streamed token; empty text does not count as a token."""
        if not text:
            return
        self.mark_first_token()
        if self.monitor is not None:
            self.monitor.tracer.record_generated_token(self.context, self.tokens_seen, text)
        self.tokens_seen += 1

    def finish(self, output_tokens: Optional[int] = None, error: Optional[BaseException] = None):
        """
        Commit metrics and close the span. Only the first call has an effect.

        Args:
            output_tokens: Generated token count; defaults to the streamed count
            error: Failure that ended the inference, if any
        """
        if self.finished:
            return
        self.finished = True

        if self.monitor is None:
            return

        if output_tokens is None:
            output_tokens = self.tokens_seen

        if error is not None:
            self.monitor.record_error("inference_error")
            self.span.record_exception(error)
            self.span.set_status(Status(StatusCode.ERROR, str(error)))
        else:
            self.monitor.record_inference_metrics(
                self.start_time,
                self.input_tokens,
                output_tokens,
                self.first_token_time,
            )
            self._annotate_span(output_tokens)

        self.span.end()

    def cancel(self):
        """
        Close the span of an inference abandoned by its caller.

        No metrics or error kinds are recorded. Only the first call to
        finish or cancel has an effect.
        """
        if self.finished:
            return
        self.finished = True

        if self.monitor is None:
            return

        self.span.set_attribute("inference.cancelled", True)
        self.span.add_event("cancelled", {"tokens.output": self.tokens_seen})
        self.span.end()

    def _annotate_span(self, output_tokens: int):
        if not self.span.is_recording():
            return

        tracer = self.monitor.tracer
        elapsed = time.perf_counter() - self.start_time
        if elapsed > 0:
            tracer.record_tokens_per_second(self.context, output_tokens / elapsed)
        if self.first_token_time is not None:
            tracer.record_first_token_latency(
                self.context, (self.first_token_time - self.start_time) * 1000.0
            )

        collector = self.monitor.collector
        snapshot = collector.last_snapshot if collector is not None else None
        if snapshot is None:
            return
        tracer.record_kv_cache_info(
            self.context, snapshot.memory.kv_cache_bytes, snapshot.memory.kv_cache_max_bytes
        )
        tracer.record_memory_usage(
            self.context,
            snapshot.model.size_bytes / MIB,
            snapshot.memory.kv_cache_bytes / MIB,
            snapshot.memory.used_bytes / MIB,
        )

    def __enter__(self) -> "InferenceTrace":
        return self

    def __exit__(self, exc_type, exc, tb):
        if isinstance(exc, asyncio.CancelledError):
            self.cancel()
        else:
            self.finish(error=exc)
        return False


def trace_chat(input_tokens: int) -> InferenceTrace:
    """Start tracing an LLM call with the monitor bound to the current request."""
    return InferenceTrace(get_monitor_from_context(), input_tokens)


def build_monitor(
    settings: RAGSettings,
    registry: MetricRegistry,
    tracer: Optional[LlamaCppTracer] = None,
    stats_client: Optional[StatsClient] = None
) -> InferenceMonitor:
    """
    Wire metrics, tracer and engine scrape loop for the RAG service.

    The model configuration starts at its defaults; the service refreshes it
    from the engine on startup.

    Raises:
        TracerInitError: If the tracer cannot be constructed
    """
    metrics = InferenceMetrics(registry)
    if tracer is None:
        tracer = LlamaCppTracer("llama-cpp-monitor", settings.otlp_endpoint)
    if stats_client is None:
        stats_client = StatsClient(settings.model_runner_url, timeout=settings.stats_timeout)

    collector = ScrapeLoop(
        stats_client,
        registry,
        model_label=settings.llm_model,
        interval=settings.collection_interval,
    )
    return InferenceMonitor(metrics, tracer, collector)
